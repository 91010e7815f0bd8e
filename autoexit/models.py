from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional
import time


@dataclass(frozen=True)
class Candle:
    """Bougie OHLC d'une minute (time = début de minute, epoch secondes)."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class ExitState(str, Enum):
    ARMED = "ARMED"
    FIRING = "FIRING"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    SECONDARY_STOP = "SECONDARY_STOP"
    TAKE_PROFIT = "TAKE_PROFIT"
    MANUAL = "MANUAL"
    EMERGENCY = "EMERGENCY"


class LevelKind(str, Enum):
    STOP = "stop"
    SECONDARY_STOP = "secondary_stop"
    TAKE_PROFIT = "take_profit"


@dataclass
class ArmedExit:
    """
    Configuration de sortie automatique pour UNE position ouverte.
    Les prix de niveaux sont exprimés sur le sous-jacent.
    """
    symbol: str
    side: Literal["LONG", "SHORT"]
    quantity: int
    entry_price: float
    stop_price: Optional[float]
    take_profit_price: Optional[float]
    secondary_stop_price: Optional[float] = None
    # Prix du sous-jacent au moment où chaque niveau a été (ré)armé
    stop_placement_price: Optional[float] = None
    take_profit_placement_price: Optional[float] = None
    secondary_stop_placement_price: Optional[float] = None
    option_type: Literal["call", "put"] = "call"
    ticker_id: str = ""
    option_contract_id: Optional[str] = None
    target_profit_usd: float = 0.0
    max_loss_usd: float = 0.0
    delta: float = 0.0
    tick_size: float = 0.01
    state: ExitState = ExitState.ARMED
    armed_at: float = field(default_factory=time.time)

    @property
    def closed(self) -> bool:
        return self.state is not ExitState.ARMED

    @property
    def exit_side(self) -> Literal["BUY", "SELL"]:
        # LONG se ferme par une vente, SHORT par un rachat
        return "SELL" if self.side == "LONG" else "BUY"

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "stop_price": self.stop_price,
            "take_profit_price": self.take_profit_price,
            "secondary_stop_price": self.secondary_stop_price,
            "stop_placement_price": self.stop_placement_price,
            "take_profit_placement_price": self.take_profit_placement_price,
            "secondary_stop_placement_price": self.secondary_stop_placement_price,
            "option_type": self.option_type,
            "ticker_id": self.ticker_id,
            "option_contract_id": self.option_contract_id,
            "target_profit_usd": self.target_profit_usd,
            "max_loss_usd": self.max_loss_usd,
            "delta": self.delta,
            "tick_size": self.tick_size,
            "state": self.state.value,
            "armed_at": self.armed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ArmedExit":
        def _opt(key):
            v = data.get(key)
            return float(v) if v is not None else None

        return cls(
            symbol=data["symbol"],
            side=data["side"],
            quantity=int(data["quantity"]),
            entry_price=float(data["entry_price"]),
            stop_price=_opt("stop_price"),
            take_profit_price=_opt("take_profit_price"),
            secondary_stop_price=_opt("secondary_stop_price"),
            stop_placement_price=_opt("stop_placement_price"),
            take_profit_placement_price=_opt("take_profit_placement_price"),
            secondary_stop_placement_price=_opt("secondary_stop_placement_price"),
            option_type=data.get("option_type", "call"),
            ticker_id=str(data.get("ticker_id", "")),
            option_contract_id=data.get("option_contract_id"),
            target_profit_usd=float(data.get("target_profit_usd", 0.0)),
            max_loss_usd=float(data.get("max_loss_usd", 0.0)),
            delta=float(data.get("delta", 0.0)),
            tick_size=float(data.get("tick_size", 0.01)),
            state=ExitState(data.get("state", ExitState.ARMED.value)),
            armed_at=float(data.get("armed_at", time.time())),
        )


@dataclass
class ExitAttempt:
    attempt_number: int
    limit_price: Optional[float]
    remaining_quantity: int
    order_type: Literal["MKT", "LMT"] = "LMT"
    order_id: Optional[str] = None


@dataclass(frozen=True)
class Trigger:
    """Décision de sortie émise par l'évaluateur."""
    reason: ExitReason
    level: float
    price: float
