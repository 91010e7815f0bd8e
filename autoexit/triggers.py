"""
Évaluateur des déclencheurs de sortie (stop, stop secondaire, take-profit).

Règle de croisement : un stop ne part pas parce que le prix est au-delà du
niveau, mais parce que le prix a TRAVERSÉ le niveau par rapport au prix du
sous-jacent au moment où ce niveau a été placé.
    niveau > placement  -> déclenche si prix >= niveau
    niveau < placement  -> déclenche si prix <= niveau
    |niveau - placement| <= 0.01 -> déclenche à la prochaine lecture
"""
import logging
import math
from typing import Optional

from autoexit.models import ArmedExit, ExitReason, ExitState, LevelKind, Trigger

logger = logging.getLogger("ExitTrigger")

PRICE_EPSILON = 0.01


def crossed(level: float, placement: float, price: float, eps: float = PRICE_EPSILON) -> bool:
    if abs(level - placement) <= eps:
        return True
    if level > placement:
        return price >= level
    return price <= level


def take_profit_reached(take_profit: float, entry: float, price: float) -> bool:
    # Sens unique depuis l'entrée, sans exigence de croisement
    if take_profit > entry:
        return price >= take_profit
    if take_profit < entry:
        return price <= take_profit
    return True


class ExitTriggerEvaluator:
    """ARMED -> FIRING -> CLOSED, sans autre transition."""

    def check(
        self,
        armed: Optional[ArmedExit],
        price: Optional[float],
        connected: bool = True,
        just_corrected: bool = False,
    ) -> Optional[Trigger]:
        if armed is None or armed.closed or not connected:
            return None
        if price is None or not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            return None
        if just_corrected:
            logger.debug("⏸️ Évaluation suspendue un cycle (correction par barre officielle)")
            return None

        trigger = self._evaluate(armed, float(price))
        if trigger is None:
            return None

        # Marqué fermé AVANT tout appel à l'exécuteur : au plus un déclenchement
        armed.state = ExitState.FIRING
        logger.warning(
            f"🎯 {trigger.reason.value} déclenché {armed.symbol} @ {trigger.price:.2f} (niveau {trigger.level:.2f})"
        )
        return trigger

    def _evaluate(self, armed: ArmedExit, price: float) -> Optional[Trigger]:
        if armed.stop_price is not None:
            placement = armed.stop_placement_price if armed.stop_placement_price is not None else armed.entry_price
            if crossed(armed.stop_price, placement, price):
                return Trigger(ExitReason.STOP_LOSS, armed.stop_price, price)

        if armed.secondary_stop_price is not None:
            placement = armed.secondary_stop_placement_price
            if placement is None:
                placement = armed.entry_price
            if crossed(armed.secondary_stop_price, placement, price):
                return Trigger(ExitReason.SECONDARY_STOP, armed.secondary_stop_price, price)

        if armed.take_profit_price is not None:
            if take_profit_reached(armed.take_profit_price, armed.entry_price, price):
                return Trigger(ExitReason.TAKE_PROFIT, armed.take_profit_price, price)
        return None

    @staticmethod
    def move_level(armed: ArmedExit, kind: LevelKind, level: Optional[float], current_price: float) -> bool:
        """Déplace (ou retire avec None) un niveau et mémorise le prix de placement."""
        if armed.closed:
            return False
        if kind is LevelKind.STOP:
            armed.stop_price, armed.stop_placement_price = level, current_price
        elif kind is LevelKind.SECONDARY_STOP:
            armed.secondary_stop_price, armed.secondary_stop_placement_price = level, current_price
        else:
            armed.take_profit_price, armed.take_profit_placement_price = level, current_price
        logger.info(f"📍 Niveau {kind.value} déplacé à {level} (placement {current_price:.2f})")
        return True
