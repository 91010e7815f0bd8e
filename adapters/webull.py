from __future__ import annotations
"""Transport courtier Webull via le proxy de signature local (PAPER / REAL)."""
import logging
from typing import Any, Optional

import httpx

from autoexit.errors import SessionExpired, StrikeUnavailable, classify_broker_error
from core.http import AsyncHttpClient
from interfaces.broker import Bar, OptionQuote, OrderRequest, PlacedOrder, Quote

logger = logging.getLogger("WebullBroker")

SIGNATURE_PATH = "/api/webull/signature"


def _f(value: Any) -> Optional[float]:
	try:
		return float(value) if value not in (None, "") else None
	except (TypeError, ValueError):
		return None


def parse_bar(raw: Any) -> Optional[Bar]:
	"""Barre kdata : dict {time, open, ...} ou chaîne CSV "t,o,c,h,l,...,v"."""
	if isinstance(raw, dict):
		try:
			return Bar(time=int(raw["time"]), open=raw["open"], high=raw["high"], low=raw["low"],
			           close=raw["close"], volume=raw.get("volume") or 0)
		except (KeyError, TypeError, ValueError):
			return None
	if isinstance(raw, str):
		parts = raw.split(",")
		if len(parts) < 5:
			return None
		try:
			return Bar(time=int(parts[0]), open=float(parts[1]), close=float(parts[2]), high=float(parts[3]),
			           low=float(parts[4]), volume=float(parts[6]) if len(parts) > 6 and parts[6] not in ("", "null") else 0)
		except ValueError:
			return None
	return None


class WebullBroker:
	name = "webull"

	def __init__(self, base_url: str, access_token: str, device_id: str, account_id: str,
	             trade_token: str | None = None, mode: str = "PAPER",
	             transport: httpx.AsyncBaseTransport | None = None) -> None:
		self.http = AsyncHttpClient(base_url, timeout=2.5, transport=transport)
		self.access_token = access_token
		self.device_id = device_id
		self.account_id = account_id
		self.trade_token = trade_token
		self.mode = mode.upper()

	@property
	def _account_path(self) -> str:
		if self.mode == "PAPER":
			return f"/api/paper/v1/webull/{self.account_id}"
		return f"/api/trading/v1/webull/{self.account_id}"

	def _envelope(self, method: str, path: str, params: dict | None = None, body: dict | None = None) -> dict:
		return {
			"method": method,
			"path": path,
			"headers": {"access_token": self.access_token, "did": self.device_id, "t_token": self.trade_token or ""},
			"queryParams": params or {},
			"body": body,
		}

	def _check(self, resp: httpx.Response) -> Any:
		try:
			data = resp.json()
		except ValueError:
			data = {"message": resp.text}
		if resp.status_code in (401, 403):
			logger.error("🔒 Session courtier expirée : déconnexion forcée")
			raise SessionExpired(f"HTTP {resp.status_code}")
		if resp.status_code >= 400 or (isinstance(data, dict) and data.get("success") is False):
			message = (data.get("message") or data.get("msg") or data.get("error") or f"HTTP {resp.status_code}") \
				if isinstance(data, dict) else str(data)
			err = classify_broker_error(message)
			if isinstance(err, SessionExpired):
				logger.error("🔒 Session courtier expirée : déconnexion forcée")
			raise err
		return data

	async def _read(self, path: str, params: dict | None = None) -> Any:
		resp = await self.http.post_read(SIGNATURE_PATH, self._envelope("GET", path, params))
		return self._check(resp)

	# -------------------- Ordres -------------------- #
	async def place_order(self, req: OrderRequest) -> PlacedOrder:
		if self.mode == "REAL" and not self.trade_token:
			raise SessionExpired("Trade token requis pour le compte réel")
		body = {
			"action": req.side,
			"orderType": req.order_type,
			"quantity": req.quantity,
			"tickerId": int(req.option_contract_id or req.ticker_id),
			"timeInForce": req.time_in_force,
			"outsideRegularTradingHour": req.outside_regular_trading_hour,
		}
		if req.order_type == "LMT" and req.price is not None:
			body["lmtPrice"] = f"{req.price:.2f}"
		path = f"{self._account_path}/orders"
		if req.option_contract_id:
			path += "/option"
		# Un seul POST : jamais rejoué
		resp = await self.http.post_json(SIGNATURE_PATH, self._envelope("POST", path, body=body))
		data = self._check(resp)
		order_id = (data.get("orderId") or (data.get("data") or {}).get("orderId")) if isinstance(data, dict) else None
		if not order_id:
			raise classify_broker_error(f"Réponse d'ordre sans orderId: {data}")
		logger.info(f"📤 Ordre {req.side} {req.quantity} {req.order_type} envoyé ({self.mode}) -> {order_id}")
		return PlacedOrder(order_id=str(order_id), raw=data)

	# -------------------- Cotations -------------------- #
	async def get_quote(self, ticker_id: str) -> Quote:
		data = await self._read(f"/api/quote/v1/quote/ticker/{ticker_id}")
		d = data.get("data", data) if isinstance(data, dict) else {}
		bid = d.get("bidList") or []
		ask = d.get("askList") or []
		return Quote(
			ticker_id=str(ticker_id),
			bid=_f(bid[0].get("price")) if bid else _f(d.get("bid")),
			ask=_f(ask[0].get("price")) if ask else _f(d.get("ask")),
			last=_f(d.get("close") or d.get("price")),
			close=_f(d.get("preClose") or d.get("close")),
		)

	async def get_option_quote(self, contract_id: str) -> OptionQuote:
		data = await self._read(f"/api/quote/v1/quote/option/{contract_id}")
		d = data.get("data", data) if isinstance(data, dict) else {}
		bid = d.get("bidList") or []
		ask = d.get("askList") or []
		delta = _f(d.get("delta"))
		return OptionQuote(
			contract_id=str(contract_id),
			bid=_f(bid[0].get("price")) if bid else _f(d.get("bid")),
			ask=_f(ask[0].get("price")) if ask else _f(d.get("ask")),
			close=_f(d.get("close")),
			delta=delta,
			live=delta is not None and _f(d.get("close")) is not None,
		)

	async def get_historical_bars(self, ticker_id: str, interval: str = "m1", count: int = 390) -> list[Bar]:
		data = await self._read("/api/quote/v1/kdata/history", {"tickerId": ticker_id, "type": interval, "count": count})
		rows = data.get("data", []) if isinstance(data, dict) else data
		bars = [b for b in (parse_bar(r) for r in rows or []) if b is not None]
		bars.sort(key=lambda b: b.time)
		return bars

	async def get_latest_bar(self, ticker_id: str, interval: str = "m1") -> Optional[Bar]:
		data = await self._read("/api/quote/v1/kdata/latest", {"tickerId": ticker_id, "type": interval})
		rows = data.get("data", []) if isinstance(data, dict) else data
		return parse_bar(rows[0]) if rows else None

	async def get_account_snapshot(self, ticker_id: str) -> dict:
		orders = await self._read(f"{self._account_path}/orders", {"tickerId": ticker_id, "pageSize": 20})
		positions = await self._read(f"{self._account_path}/positions")
		return {
			"orders": orders if isinstance(orders, list) else (orders or {}).get("data", []),
			"positions": [p for p in (positions if isinstance(positions, list) else (positions or {}).get("data", []))
			              if str(p.get("tickerId", ticker_id)) == str(ticker_id)],
		}

	# -------------------- Chaîne d'options -------------------- #
	async def find_option_contract(self, symbol: str, ticker_id: str, strike: float, expiration: str,
	                               option_type: str = "call") -> str:
		data = await self._read("/api/quote/v1/option/list", {"tickerId": ticker_id, "expireDate": expiration})
		rows = data.get("data", []) if isinstance(data, dict) else data
		candidates = [r for r in rows or [] if str(r.get("direction", "")).lower() == option_type]
		for r in candidates:
			if abs(float(r.get("strikePrice", 0)) - strike) < 1e-6:
				return str(r.get("tickerId"))
		raise StrikeUnavailable(symbol, strike, {float(r.get("strikePrice", 0)) for r in candidates})

	async def close(self) -> None:
		await self.http.close()


Adapter = WebullBroker
