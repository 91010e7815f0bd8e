"""
Nettoyage des séquences de bougies (fonctions pures).

Toute donnée invalide est filtrée silencieusement : ces fonctions ne lèvent
jamais d'exception, même sur une entrée vide ou corrompue.
"""
import logging
import math
from datetime import datetime, time as dtime, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from autoexit.models import Candle

logger = logging.getLogger("Sanitizer")

EXCHANGE_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = dtime(9, 30)
MARKET_CLOSE = dtime(16, 0)

MAX_INGEST_RANGE = 0.20      # (high-low)/moyenne à l'ingestion
MAX_HISTORY_JUMP = 0.15      # saut max vs clôture précédente (historique)


def minute_floor(ts: float) -> int:
    return int(ts) // 60 * 60


def is_regular_market_hours(ts: float) -> bool:
    """09:30 <= heure locale de la bourse < 16:00, du lundi au vendredi."""
    try:
        local = datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(EXCHANGE_TZ)
    except (OverflowError, OSError, ValueError, TypeError):
        return False
    if local.weekday() >= 5:
        return False
    return MARKET_OPEN <= local.time() < MARKET_CLOSE


def range_ratio(c: Candle) -> float:
    avg = (c.high + c.low) / 2
    return (c.high - c.low) / avg if avg > 0 else math.inf


def is_valid_candle(c: Candle) -> bool:
    """OHLC finis, positifs, et low <= open,close <= high."""
    values = (c.open, c.high, c.low, c.close)
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return False
    if not all(math.isfinite(v) and v > 0 for v in values):
        return False
    return c.low <= min(c.open, c.close) and max(c.open, c.close) <= c.high


def _num(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def to_candle(record: Any) -> Optional[Candle]:
    """Convertit un enregistrement (Candle, Bar, dict long ou court) en Candle, ou None."""
    if isinstance(record, Candle):
        return record
    if hasattr(record, "model_dump"):
        # Bar pydantic du transport courtier
        record = record.model_dump()
    if not isinstance(record, dict):
        return None

    def pick(long_key: str, short_key: str):
        return record[long_key] if long_key in record else record.get(short_key)

    ts = _num(pick("time", "t"))
    o, h, l, c = (_num(pick(k, k[0])) for k in ("open", "high", "low", "close"))
    if ts is None or None in (o, h, l, c):
        return None
    # Timestamps en millisecondes -> secondes
    if ts > 1e12:
        ts = ts / 1000
    volume = _num(pick("volume", "v")) or 0.0
    return Candle(time=int(ts), open=o, high=h, low=l, close=c, volume=volume)


def _within(value: float, reference: float, tolerance: float) -> bool:
    return abs(value - reference) / reference <= tolerance


def sanitize_candles(records: Iterable[Any]) -> list[Candle]:
    """
    Produit une séquence propre :
    1. structure valide, 2. heures de marché régulières, 3. tri croissant,
    4. dédoublonnage (time <= précédent rejeté), 5. filtre des sauts > 15%.
    """
    try:
        items = list(records or [])
    except TypeError:
        return []

    candidates = []
    for rec in items:
        candle = to_candle(rec)
        if candle is None or not is_valid_candle(candle):
            continue
        if range_ratio(candle) > MAX_INGEST_RANGE:
            continue
        if not is_regular_market_hours(candle.time):
            continue
        candidates.append(candle)

    # Tri stable : à timestamp égal, le premier enregistrement est conservé
    candidates.sort(key=lambda c: c.time)

    kept: list[Candle] = []
    for candle in candidates:
        if kept:
            prev = kept[-1]
            if candle.time <= prev.time:
                continue
            if not all(_within(v, prev.close, MAX_HISTORY_JUMP) for v in (candle.close, candle.high, candle.low)):
                logger.debug(f"🧹 Bougie aberrante ignorée t={candle.time} c={candle.close} (préc. {prev.close})")
                continue
        kept.append(candle)

    dropped = len(items) - len(kept)
    if dropped:
        logger.debug(f"🧹 Sanitizer: {dropped} bougies filtrées sur {len(items)}")
    return kept
