from typing import Optional

import pytest

from interfaces.broker import Bar, OptionQuote, OrderRequest, OrderUpdate, PlacedOrder, Quote

# Mardi 2 janvier 2024, 10:00 heure de New York (séance régulière)
BASE_TS = 1704207600


class FakeBroker:
    def __init__(self, quote: Optional[Quote] = None, fail_with: Optional[Exception] = None,
                 option_quote: Optional[OptionQuote] = None):
        self.quote = quote or Quote(ticker_id="1", bid=2.00, ask=2.10, last=2.05, close=2.05)
        self.fail_with = fail_with
        self.option_quote = option_quote
        self.orders: list[OrderRequest] = []
        self.bars: list[Bar] = []
        self.latest: list = []
        self.snapshot: dict = {}

    async def place_order(self, req: OrderRequest) -> PlacedOrder:
        self.orders.append(req)
        if self.fail_with is not None:
            raise self.fail_with
        return PlacedOrder(order_id=f"ORD-{len(self.orders)}")

    async def get_quote(self, ticker_id: str) -> Quote:
        return self.quote

    async def get_option_quote(self, contract_id: str) -> OptionQuote:
        if self.option_quote is not None:
            return self.option_quote
        return OptionQuote(contract_id=contract_id, bid=self.quote.bid, ask=self.quote.ask,
                           close=self.quote.close, delta=0.5)

    async def get_historical_bars(self, ticker_id: str, interval: str = "m1", count: int = 390) -> list[Bar]:
        return self.bars[-count:]

    async def get_latest_bar(self, ticker_id: str, interval: str = "m1") -> Optional[Bar]:
        item = self.latest.pop(0) if self.latest else None
        if isinstance(item, Exception):
            raise item
        return item

    async def get_account_snapshot(self, ticker_id: str) -> dict:
        return self.snapshot


class FakeUpdates:
    """Rejoue une liste de mises à jour, une par ordre placé."""

    def __init__(self, updates=None, available: bool = True, position: Optional[float] = None, quotes=None):
        self.available = available
        self.updates = list(updates or [])
        self.position = position
        self.waited: list[str] = []
        self.quotes: dict = dict(quotes or {})

    async def wait_for_order_update(self, order_id: str, timeout: float = 0.5) -> Optional[OrderUpdate]:
        self.waited.append(order_id)
        if not self.updates:
            return None
        upd = self.updates.pop(0)
        return upd.model_copy(update={"order_id": order_id}) if upd is not None else None

    def position_qty(self, symbol: str) -> Optional[float]:
        return self.position

    def latest_quote(self, symbol: str) -> Optional[Quote]:
        return self.quotes.get(symbol)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def filled_updates():
    return FakeUpdates([OrderUpdate(status="FILLED", filled_quantity=5, remaining_quantity=0)] * 3)
