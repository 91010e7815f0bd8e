import logging
import math
from dataclasses import dataclass
from typing import Optional

from interfaces.broker import OptionQuote

logger = logging.getLogger("PositionSizer")

UNAVAILABLE = "--"


@dataclass(frozen=True)
class SizingResult:
    available: bool
    contracts: Optional[int]
    profit_per_dollar: Optional[float]
    reason: str = ""

    @property
    def display(self) -> str:
        return str(self.contracts) if self.available else UNAVAILABLE


class PositionSizer:
    """
    Dimensionnement d'une position options à partir d'un profit cible et d'un
    mouvement attendu du sous-jacent :
        profit_par_dollar = |delta| * 100
        contrats = ceil(cible / (profit_par_dollar * mouvement))
    Refuse de dimensionner si le prix ou le delta ne viennent pas d'une cotation réelle.
    """

    @staticmethod
    def size(
        target_profit_usd: float,
        expected_move_usd: float,
        delta: Optional[float],
        price_is_live: bool,
        delta_is_live: bool,
    ) -> SizingResult:
        if not price_is_live or not delta_is_live:
            return SizingResult(False, None, None, reason="no real market data")

        if delta is None or not math.isfinite(delta) or delta == 0:
            return SizingResult(False, None, None, reason="delta unavailable")

        profit_per_dollar = abs(delta) * 100
        if expected_move_usd is None or expected_move_usd <= 0 or target_profit_usd <= 0:
            return SizingResult(False, None, profit_per_dollar, reason="invalid inputs")

        contracts = math.ceil(target_profit_usd / (profit_per_dollar * expected_move_usd))

        logger.info(
            f"⚖️ Sizing: cible={target_profit_usd:.2f}$ | move={expected_move_usd:.2f}$ | "
            f"delta={delta:.4f} -> {profit_per_dollar:.2f}$/$ -> {contracts} contrats"
        )
        return SizingResult(True, contracts, profit_per_dollar)

    @classmethod
    def size_from_quote(cls, target_profit_usd: float, expected_move_usd: float, quote: Optional[OptionQuote]) -> SizingResult:
        if quote is None:
            return SizingResult(False, None, None, reason="no quote")
        price = quote.close if quote.close else (quote.ask or quote.bid)
        price_is_live = quote.live and bool(price and price > 0)
        delta_is_live = quote.live and quote.delta is not None
        return cls.size(target_profit_usd, expected_move_usd, quote.delta, price_is_live, delta_is_live)
