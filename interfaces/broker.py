from __future__ import annotations
from typing import Protocol, Optional, Literal
from pydantic import BaseModel, Field

class Bar(BaseModel):
    time: int; open: float; high: float; low: float; close: float; volume: float = 0.0

class Quote(BaseModel):
    ticker_id: str
    bid: Optional[float] = None
    ask: Optional[float] = None
    last: Optional[float] = None
    close: Optional[float] = None

class OptionQuote(BaseModel):
    contract_id: str
    bid: Optional[float] = None
    ask: Optional[float] = None
    close: Optional[float] = None
    delta: Optional[float] = None
    # True uniquement si prix ET delta viennent d'une cotation de marché réelle
    live: bool = True

class OrderRequest(BaseModel):
    side: Literal["BUY", "SELL"]
    ticker_id: str
    quantity: int
    order_type: Literal["MKT", "LMT"] = "LMT"
    price: float | None = None
    time_in_force: str = "DAY"
    outside_regular_trading_hour: bool = False
    option_contract_id: str | None = None

class PlacedOrder(BaseModel):
    order_id: str
    raw: dict = Field(default_factory=dict)

class OrderUpdate(BaseModel):
    order_id: str | None = None
    status: str = "Unknown"
    filled_quantity: float = 0.0
    remaining_quantity: float | None = None
    avg_exec_price: float = 0.0
    position_qty: float | None = None
    # Faux en mode HTTP : la platitude n'est pas confirmée par le flux d'événements
    flatness_verified: bool = True

class BrokerTransport(Protocol):
    async def place_order(self, req: OrderRequest) -> PlacedOrder: ...
    async def get_quote(self, ticker_id: str) -> Quote: ...
    async def get_option_quote(self, contract_id: str) -> OptionQuote: ...
    async def get_historical_bars(self, ticker_id: str, interval: str = "m1", count: int = 390) -> list[Bar]: ...
    async def get_latest_bar(self, ticker_id: str, interval: str = "m1") -> Optional[Bar]: ...
    async def get_account_snapshot(self, ticker_id: str) -> dict: ...

class OrderUpdateSource(Protocol):
    available: bool
    async def wait_for_order_update(self, order_id: str, timeout: float = 0.5) -> Optional[OrderUpdate]: ...
    def position_qty(self, symbol: str) -> Optional[float]: ...
    def latest_quote(self, symbol: str) -> Optional[Quote]: ...
