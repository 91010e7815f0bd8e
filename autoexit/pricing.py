"""
Modèle de delta et niveaux de sortie ajustés du gamma.

Black-Scholes (delta uniquement) :
    d1 = [ln(S/K) + (r + σ²/2)·T] / (σ·√T)
    Call: N(d1)      Put: N(d1) - 1

N(x) est approchée par la formule rationnelle d'Abramowitz & Stegun (26.2.17),
erreur absolue < 7.5e-8. Ce delta est THÉORIQUE : affichage et prévisualisation
uniquement, jamais pour dimensionner une position.
"""
import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

logger = logging.getLogger("Pricing")

RISK_FREE_RATE = 0.045
DEFAULT_IV = 0.30
NEUTRAL_DELTA = 0.5

LEVEL_MAX_ITERATIONS = 100
LEVEL_PRICE_STEP = 0.01
LEVEL_PROFIT_TOLERANCE = 1.0

_P = 0.2316419
_B = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)


def norm_cdf(x: float) -> float:
    """Fonction de répartition de la loi normale centrée réduite."""
    if x < 0:
        return 1.0 - norm_cdf(-x)
    t = 1.0 / (1.0 + _P * x)
    poly = t * (_B[0] + t * (_B[1] + t * (_B[2] + t * (_B[3] + t * _B[4]))))
    pdf = math.exp(-0.5 * x * x) / math.sqrt(2 * math.pi)
    return 1.0 - pdf * poly


@dataclass(frozen=True)
class DeltaEstimate:
    value: float
    is_live: bool
    source: str


def black_scholes_delta(
    spot: float,
    strike: float,
    days_to_expiry: float,
    option_type: Literal["call", "put"] = "call",
    iv: Optional[float] = None,
    rate: float = RISK_FREE_RATE,
) -> float:
    try:
        s, k, days = float(spot), float(strike), float(days_to_expiry)
    except (TypeError, ValueError):
        return NEUTRAL_DELTA
    if not (math.isfinite(s) and math.isfinite(k) and math.isfinite(days)) or s <= 0 or k <= 0:
        return NEUTRAL_DELTA

    # À l'échéance le delta devient une marche selon la moneyness
    if days <= 0:
        if option_type == "call":
            return 1.0 if s > k else (0.5 if s == k else 0.0)
        return -1.0 if s < k else (-0.5 if s == k else 0.0)

    sigma = iv if iv and iv > 0 else DEFAULT_IV
    t = days / 365.0
    d1 = (math.log(s / k) + (rate + 0.5 * sigma ** 2) * t) / (sigma * math.sqrt(t))
    nd1 = norm_cdf(d1)
    return nd1 if option_type == "call" else nd1 - 1.0


def theoretical_delta(spot, strike, days_to_expiry, option_type="call", iv=None) -> DeltaEstimate:
    return DeltaEstimate(
        value=black_scholes_delta(spot, strike, days_to_expiry, option_type, iv),
        is_live=False,
        source="black-scholes",
    )


def _search_direction(option_type: str, goal: str, inverted: bool) -> int:
    # Call : le profit vient d'une hausse du sous-jacent ; put : d'une baisse
    direction = 1 if option_type == "call" else -1
    if goal == "loss":
        direction = -direction
    return -direction if inverted else direction


def gamma_adjusted_level(
    entry_price: float,
    expected_move: float,
    quantity: int,
    target_usd: float,
    entry_delta: Optional[float],
    strike: Optional[float],
    days_to_expiry: Optional[float],
    option_type: Literal["call", "put"] = "call",
    goal: Literal["profit", "loss"] = "profit",
    inverted: bool = False,
    iv: Optional[float] = None,
) -> float:
    """
    Cherche le prix du sous-jacent où
        moyenne(|delta entrée|, |delta(candidat)|) * 100 * qty * |mouvement| == cible.
    Itération de point fixe (<= 100 itérations, pas de $0.01, tolérance $1).
    Sans convergence, renvoie le dernier prix testé.
    """
    direction = _search_direction(option_type, goal, inverted)
    flat = round(entry_price + direction * abs(expected_move), 2)

    if not entry_delta or days_to_expiry is None or not strike or quantity <= 0 or target_usd <= 0:
        return flat

    entry_abs = abs(entry_delta)
    candidate = flat
    for _ in range(LEVEL_MAX_ITERATIONS):
        move = abs(candidate - entry_price)
        cand_delta = abs(black_scholes_delta(candidate, strike, days_to_expiry, option_type, iv))
        avg_delta = (entry_abs + cand_delta) / 2
        pnl = avg_delta * 100 * quantity * move
        if abs(target_usd - pnl) <= LEVEL_PROFIT_TOLERANCE:
            return round(candidate, 2)
        if avg_delta <= 0:
            break
        next_candidate = round(entry_price + direction * target_usd / (avg_delta * 100 * quantity), 2)
        if next_candidate <= 0:
            break
        if abs(next_candidate - candidate) < LEVEL_PRICE_STEP:
            candidate = next_candidate
            break
        candidate = next_candidate

    logger.debug(f"📐 Niveau ajusté gamma sans convergence stricte, dernier prix testé {candidate:.2f}")
    return round(candidate, 2)


@dataclass(frozen=True)
class ExitLevels:
    stop: float
    take_profit: float
    secondary_stop: Optional[float] = None


def compute_exit_levels(
    entry_price: float,
    expected_move: float,
    quantity: int,
    target_profit_usd: float,
    max_loss_usd: float,
    delta: Optional[float],
    strike: Optional[float] = None,
    days_to_expiry: Optional[float] = None,
    option_type: Literal["call", "put"] = "call",
    iv: Optional[float] = None,
    secondary_stop: bool = False,
) -> ExitLevels:
    """Niveaux stop / take-profit (et stop secondaire en mode override) sur le sous-jacent."""
    take_profit = gamma_adjusted_level(
        entry_price, expected_move, quantity, target_profit_usd, delta, strike,
        days_to_expiry, option_type, goal="profit", iv=iv,
    )
    stop = gamma_adjusted_level(
        entry_price, expected_move, quantity, max_loss_usd, delta, strike,
        days_to_expiry, option_type, goal="loss", iv=iv,
    )
    secondary = None
    if secondary_stop:
        secondary = gamma_adjusted_level(
            entry_price, expected_move, quantity, max_loss_usd, delta, strike,
            days_to_expiry, option_type, goal="loss", inverted=True, iv=iv,
        )
    return ExitLevels(stop=stop, take_profit=take_profit, secondary_stop=secondary)
