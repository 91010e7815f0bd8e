import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from autoexit.models import Candle
from autoexit.sanitizer import is_valid_candle, minute_floor, range_ratio, sanitize_candles, to_candle
from autoexit.storage import KeyValueStore

logger = logging.getLogger("CandleBuilder")

MAX_TICK_JUMP = 0.10          # saut max d'un tick vs dernier prix accepté
MAX_RANGE_EXPANSION = 0.10    # élargissement max du range de la bougie en une mise à jour
MAX_INTRA_CANDLE_MOVE = 0.05  # écart max vs l'open de la bougie courante
MAX_BAR_RANGE = 0.10          # range max d'une barre minute officielle
VISUAL_THRESHOLD = 0.01       # variation mini de clôture pour pousser une mise à jour visuelle

SNAPSHOT_MAX_BARS = 390
SNAPSHOT_MAX_AGE_S = 24 * 3600
BAR_DISCARD_AGE_S = 2 * 24 * 3600


@dataclass
class TickResult:
    accepted: bool
    new_candle: bool = False
    visual_update: bool = False
    reason: str = ""


class RealtimeCandleBuilder:
    """
    Construit la bougie minute en cours à partir des ticks de prix et réconcilie
    avec les barres officielles du fournisseur.

    Non ré-entrant : doit être alimenté par une seule source (un callback amont).
    """

    def __init__(
        self,
        symbol: str,
        max_history: int = 2000,
        correction_timeout: Optional[float] = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.symbol = symbol
        self.max_history = max_history
        self.correction_timeout = correction_timeout
        self.clock = clock
        self.history: List[Candle] = []
        self.current: Optional[Dict[str, float]] = None
        self.last_price: Optional[float] = None
        self.just_corrected = False
        self._corrected_at = 0.0
        self._last_visual_close: Optional[float] = None
        self._listeners: List[Callable[[Candle], Any]] = []

    @property
    def snapshot_key(self) -> str:
        return f"candles:{self.symbol}"

    def on_candle(self, callback: Callable[[Candle], Any]) -> None:
        """Enregistre un callback appelé à chaque bougie clôturée."""
        self._listeners.append(callback)

    def current_candle(self) -> Optional[Candle]:
        if self.current is None:
            return None
        return Candle(**self.current)

    def candles(self) -> List[Candle]:
        cur = self.current_candle()
        return self.history + ([cur] if cur else [])

    # -------------------- Historique -------------------- #
    def load_history(self, bars: List[Any]) -> int:
        """Installe un historique (fetch initial) après nettoyage."""
        cleaned = sanitize_candles(bars)
        if self.current is not None:
            cleaned = [c for c in cleaned if c.time < self.current["time"]]
        self.history = cleaned[-self.max_history:]
        if self.history and self.last_price is None:
            self.last_price = self.history[-1].close
        logger.info(f"📚 Historique chargé pour {self.symbol}: {len(self.history)} bougies")
        return len(self.history)

    def _freeze_current(self) -> None:
        if self.current is None:
            return
        closed = Candle(**self.current)
        self.history.append(closed)
        self.history = sanitize_candles(self.history)[-self.max_history:]
        self.current = None
        for cb in self._listeners:
            try:
                cb(closed)
            except Exception as e:
                logger.error(f"❌ Callback bougie échoué: {e}")

    def _start_candle(self, minute: int, o: float, h: float, l: float, c: float, v: float = 0.0) -> None:
        self.current = {"time": minute, "open": o, "high": h, "low": l, "close": c, "volume": v}
        self._last_visual_close = c

    # -------------------- Ticks temps réel -------------------- #
    def build_realtime_candle(self, price: Any, ts: Optional[float] = None) -> TickResult:
        """Intègre un tick de prix dans la bougie minute courante."""
        try:
            p = float(price)
        except (TypeError, ValueError):
            return TickResult(False, reason="invalid")
        if not math.isfinite(p) or p <= 0:
            return TickResult(False, reason="invalid")

        if self.last_price and abs(p - self.last_price) / self.last_price > MAX_TICK_JUMP:
            logger.debug(f"🚫 Tick rejeté (saut) {self.symbol}: {self.last_price} -> {p}")
            return TickResult(False, reason="jump")

        minute = minute_floor(self.clock() if ts is None else ts)
        cur = self.current

        if cur is None or minute > cur["time"]:
            self._freeze_current()
            self._start_candle(minute, p, p, p, p)
            self.last_price = p
            self.just_corrected = False
            return TickResult(True, new_candle=True, visual_update=True)

        if minute < cur["time"]:
            return TickResult(False, reason="stale")

        new_high = max(cur["high"], p)
        new_low = min(cur["low"], p)
        expansion = ((new_high - new_low) - (cur["high"] - cur["low"])) / cur["open"]
        if expansion > MAX_RANGE_EXPANSION:
            return TickResult(False, reason="range")
        if abs(p - cur["open"]) / cur["open"] > MAX_INTRA_CANDLE_MOVE:
            return TickResult(False, reason="intra_candle")

        extremes_changed = new_high != cur["high"] or new_low != cur["low"]
        # L'état interne est toujours mis à jour, seul le rendu est filtré
        cur["high"], cur["low"], cur["close"] = new_high, new_low, p
        self.last_price = p
        self.just_corrected = False

        visual = extremes_changed or self._last_visual_close is None \
            or abs(p - self._last_visual_close) >= VISUAL_THRESHOLD
        if visual:
            self._last_visual_close = p
        return TickResult(True, visual_update=visual)

    # -------------------- Barres officielles -------------------- #
    def update_chart_with_minute_bar(self, bar: Any) -> bool:
        """
        Fusionne une barre minute confirmée par le fournisseur.
        Sur la minute courante, les valeurs officielles écrasent l'OHLC et lèvent
        le drapeau de correction (l'évaluateur saute alors un cycle).
        """
        candle = to_candle(bar)
        if candle is None or not is_valid_candle(candle) or range_ratio(candle) > MAX_BAR_RANGE:
            return False

        minute = minute_floor(candle.time)
        cur = self.current

        if cur is None or minute > cur["time"]:
            self._freeze_current()
            self._start_candle(minute, candle.open, candle.high, candle.low, candle.close, candle.volume)
            self.last_price = candle.close
            return True

        if minute == cur["time"]:
            self._start_candle(minute, candle.open, candle.high, candle.low, candle.close, candle.volume)
            self.last_price = candle.close
            self.just_corrected = True
            self._corrected_at = self.clock()
            return True

        # Barre d'une minute passée : la dernière écriture gagne
        merged = Candle(minute, candle.open, candle.high, candle.low, candle.close, candle.volume)
        self.history = [c for c in self.history if c.time != minute] + [merged]
        self.history = sanitize_candles(self.history)[-self.max_history:]
        return True

    def consume_correction_flag(self) -> bool:
        """Vrai une seule fois après une correction officielle (sauf expiration)."""
        if not self.just_corrected:
            return False
        self.just_corrected = False
        if self.correction_timeout is not None and self.clock() - self._corrected_at > self.correction_timeout:
            logger.debug("⏱️ Drapeau de correction expiré, évaluation non suspendue")
            return False
        return True

    def correction_age(self) -> Optional[float]:
        """Secondes écoulées depuis la dernière correction encore en attente, sinon None."""
        if not self.just_corrected:
            return None
        return self.clock() - self._corrected_at

    # -------------------- Persistance -------------------- #
    def snapshot(self) -> dict:
        bars = [c.to_dict() for c in self.candles()[-SNAPSHOT_MAX_BARS:]]
        return {"symbol": self.symbol, "saved_at": self.clock(), "candles": bars}

    def save(self, store: KeyValueStore) -> None:
        try:
            store.set(self.snapshot_key, json.dumps(self.snapshot()))
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ Snapshot bougies échoué: {e}")

    def restore(self, store: KeyValueStore) -> int:
        """Recharge le snapshot s'il a moins de 24h, en écartant les barres de plus de 2 jours."""
        raw = store.get(self.snapshot_key)
        if not raw:
            return 0
        try:
            data = json.loads(raw)
            saved_at = float(data.get("saved_at", 0))
            bars = list(data.get("candles", []))
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"⚠️ Snapshot bougies corrompu, ignoré: {e}")
            store.remove(self.snapshot_key)
            return 0

        now = self.clock()
        if now - saved_at > SNAPSHOT_MAX_AGE_S:
            logger.info(f"🗑️ Snapshot bougies trop ancien ({(now - saved_at) / 3600:.1f}h), ignoré")
            store.remove(self.snapshot_key)
            return 0

        fresh = [b for b in bars if isinstance(b, dict) and now - float(b.get("time", 0) or 0) <= BAR_DISCARD_AGE_S]
        count = self.load_history(fresh)
        logger.info(f"♻️ {count} bougies restaurées depuis le snapshot ({self.symbol})")
        return count

    def flush(self, store: KeyValueStore) -> None:
        """Dernier snapshot à l'arrêt."""
        self.save(store)
        logger.info("💾 Snapshot bougies final écrit.")

    async def run_persistence(self, store: KeyValueStore, interval: float = 300.0):
        """Snapshot périodique, plus un dernier à l'arrêt."""
        try:
            while True:
                await asyncio.sleep(interval)
                self.save(store)
        except asyncio.CancelledError:
            self.flush(store)
            raise
