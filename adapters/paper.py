"""Courtier simulé en mémoire (mode PAPER hors ligne, tests)."""
from __future__ import annotations
import itertools
import logging
import time
from typing import Dict, List, Optional

from interfaces.broker import Bar, OptionQuote, OrderRequest, PlacedOrder, Quote

logger = logging.getLogger("PaperBroker")


class PaperBroker:
	"""
	Exécution simulée : un ordre au marché est rempli au meilleur prix opposé,
	un ordre limite seulement s'il est marketable. `fill_ratio` < 1 simule des
	exécutions partielles. Les contrats d'option ont leur propre cotation
	(`option_quotes`), distincte de celle du sous-jacent.
	"""
	name = "paper"

	def __init__(self, quote: Quote | None = None, fill_ratio: float = 1.0,
	             positions: Dict[str, float] | None = None,
	             option_quotes: Dict[str, OptionQuote] | None = None) -> None:
		self.quote = quote or Quote(ticker_id="0", bid=1.00, ask=1.05, last=1.02, close=1.02)
		self.option_quotes: Dict[str, OptionQuote] = dict(option_quotes or {})
		self.fill_ratio = fill_ratio
		self.positions: Dict[str, float] = dict(positions or {})
		self.orders: List[dict] = []
		self.bars: List[Bar] = []
		self._seq = itertools.count(1)

	def _book(self, req: OrderRequest):
		if req.option_contract_id and req.option_contract_id in self.option_quotes:
			return self.option_quotes[req.option_contract_id]
		return self.quote

	def _fill_qty(self, req: OrderRequest) -> int:
		book = self._book(req)
		if req.order_type == "LMT" and req.price is not None:
			if req.side == "SELL" and book.bid is not None and req.price > book.bid:
				return 0
			if req.side == "BUY" and book.ask is not None and req.price < book.ask:
				return 0
		return min(req.quantity, max(0, int(req.quantity * self.fill_ratio)))

	async def place_order(self, req: OrderRequest) -> PlacedOrder:
		order_id = f"SIM-{int(time.time() * 1000)}-{next(self._seq)}"
		key = req.option_contract_id or req.ticker_id
		filled = self._fill_qty(req)
		signed = filled if req.side == "BUY" else -filled
		self.positions[key] = self.positions.get(key, 0.0) + signed
		book = self._book(req)
		price = req.price if req.order_type == "LMT" else (book.bid if req.side == "SELL" else book.ask)
		order = {
			"orderId": order_id,
			"tickerId": key,
			"status": "FILLED" if filled == req.quantity else ("PARTIALLY_FILLED" if filled else "WORKING"),
			"quantity": req.quantity,
			"filledQuantity": filled,
			"remainingQuantity": req.quantity - filled,
			"avgExecPrice": price if filled else 0,
			"createTime": time.time(),
		}
		self.orders.append(order)
		logger.info(f"🧪 SIM {req.side} {req.quantity} {req.order_type} -> rempli {filled} ({order_id})")
		return PlacedOrder(order_id=order_id, raw=order)

	async def get_quote(self, ticker_id: str) -> Quote:
		return self.quote.model_copy(update={"ticker_id": str(ticker_id)})

	async def get_option_quote(self, contract_id: str) -> OptionQuote:
		if str(contract_id) in self.option_quotes:
			return self.option_quotes[str(contract_id)]
		return OptionQuote(contract_id=str(contract_id), bid=self.quote.bid, ask=self.quote.ask,
		                   close=self.quote.close, delta=None, live=False)

	async def get_historical_bars(self, ticker_id: str, interval: str = "m1", count: int = 390) -> list[Bar]:
		return self.bars[-count:]

	async def get_latest_bar(self, ticker_id: str, interval: str = "m1") -> Optional[Bar]:
		return self.bars[-1] if self.bars else None

	async def get_account_snapshot(self, ticker_id: str) -> dict:
		return {
			"orders": list(self.orders),
			"positions": [{"tickerId": k, "position": v} for k, v in self.positions.items() if str(k) == str(ticker_id)],
		}
