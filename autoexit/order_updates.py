"""
Sources de mises à jour d'ordres, derrière un même contrat
`wait_for_order_update(order_id, timeout)` :
- EventStreamUpdates : flux WebSocket local (ORDER_UPDATE / POSITIONS_UPDATE / QUOTE_UPDATE)
- HttpPollUpdates    : repli HTTP sur l'instantané compte/position (platitude non vérifiée)
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import WebSocketException

from interfaces.broker import BrokerTransport, OrderUpdate, Quote

logger = logging.getLogger("OrderUpdates")

TERMINAL_STATUSES = {"FILLED", "CANCELED", "CANCELLED", "REJECTED"}
RECONNECT_DELAY_S = 5.0


def _first_list(snapshot: dict, *keys: str) -> Optional[list]:
    data = snapshot.get("data") if isinstance(snapshot.get("data"), dict) else {}
    for key in keys:
        for container in (snapshot, data):
            value = container.get(key)
            if isinstance(value, list):
                return value
    return None


def normalize_account_snapshot(snapshot: Any, order_id: Optional[str]) -> Optional[OrderUpdate]:
    """Réduit un instantané compte/position (structure variable) à un OrderUpdate."""
    if not isinstance(snapshot, dict):
        return None

    orders = _first_list(snapshot, "orders", "orderList") or []
    order = None
    if order_id:
        order = next((o for o in orders if str(o.get("orderId") or o.get("id")) == str(order_id)), None)
    if order is None and orders:
        order = max(orders, key=lambda o: o.get("createTime") or o.get("updateTime") or o.get("time") or 0)

    data = snapshot.get("data") if isinstance(snapshot.get("data"), dict) else {}
    position = snapshot.get("position") or data.get("position")
    if position is None:
        positions = _first_list(snapshot, "positions") or []
        position = positions[0] if positions else None

    position_qty = None
    if isinstance(position, dict):
        position_qty = float(position.get("position") or position.get("quantity") or position.get("qty") or 0)

    if order is None:
        return OrderUpdate(order_id=order_id, position_qty=position_qty, flatness_verified=False)

    filled = float(order.get("filledQuantity") or order.get("filledQty") or 0)
    remaining = order.get("remainingQuantity", order.get("remainingQty"))
    if remaining is None:
        total = float(order.get("quantity") or order.get("totalQuantity") or 0)
        remaining = max(0.0, total - filled)

    return OrderUpdate(
        order_id=str(order.get("orderId") or order.get("id") or order_id),
        status=str(order.get("status") or order.get("statusName") or order.get("orderStatus") or "Unknown").upper(),
        filled_quantity=filled,
        remaining_quantity=float(remaining),
        avg_exec_price=float(order.get("avgExecPrice") or order.get("filledAvgPrice") or 0),
        position_qty=position_qty,
        flatness_verified=False,
    )


class HttpPollUpdates:
    """Repli HTTP : une interrogation courte de l'instantané compte/position."""

    available = False

    def __init__(self, broker: BrokerTransport, ticker_id: str, symbol: str = ""):
        self.broker = broker
        self.ticker_id = ticker_id
        self.symbol = symbol
        self._last_position_qty: Optional[float] = None

    async def wait_for_order_update(self, order_id: str, timeout: float = 0.5) -> Optional[OrderUpdate]:
        try:
            snapshot = await asyncio.wait_for(self.broker.get_account_snapshot(self.ticker_id), timeout=max(timeout, 2.5))
        except asyncio.TimeoutError:
            logger.warning("⚠️ Poll HTTP compte/position expiré")
            return None
        except Exception as e:
            logger.error(f"❌ Poll HTTP compte/position échoué: {e}")
            return None
        update = normalize_account_snapshot(snapshot, order_id)
        if update is not None and update.position_qty is not None:
            self._last_position_qty = update.position_qty
        return update

    def position_qty(self, symbol: str) -> Optional[float]:
        return self._last_position_qty

    def latest_quote(self, symbol: str) -> Optional[Quote]:
        return None


class EventStreamUpdates:
    """
    Client du flux d'événements courtier local. Reconnexion toutes les 5s ;
    tant que le flux est coupé, délègue au repli HTTP s'il est fourni.
    """

    def __init__(self, url: str, fallback: Optional[HttpPollUpdates] = None):
        self.url = url
        self.fallback = fallback
        self.connected = False
        self.running = False
        self.positions: Dict[str, dict] = {}
        self.quotes: Dict[str, Quote] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._last: Dict[str, OrderUpdate] = {}

    @property
    def available(self) -> bool:
        return self.connected

    async def run(self):
        """Boucle de connexion et d'écoute."""
        self.running = True
        while self.running:
            try:
                async with websockets.connect(self.url) as ws:
                    self.connected = True
                    logger.info(f"✅ Flux d'événements connecté ({self.url}), mode événementiel")
                    async for message in ws:
                        try:
                            self.handle_event(json.loads(message))
                        except (ValueError, TypeError) as e:
                            logger.error(f"❌ Événement illisible: {e}")
            except asyncio.CancelledError:
                self.connected = False
                logger.info("🛑 Arrêt du flux d'événements.")
                raise
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ Flux d'événements indisponible ({e}), mode HTTP. Reconnexion dans {RECONNECT_DELAY_S:.0f}s")
            self.connected = False
            await asyncio.sleep(RECONNECT_DELAY_S)

    def handle_event(self, evt: Any) -> None:
        if not isinstance(evt, dict) or not evt.get("type"):
            return
        payload = evt.get("payload")

        if evt["type"] == "ORDER_UPDATE" and isinstance(payload, dict):
            order_id = payload.get("orderId")
            if not order_id:
                return
            update = OrderUpdate(
                order_id=str(order_id),
                status=str(payload.get("status", "Unknown")).upper(),
                filled_quantity=float(payload.get("filledQuantity") or 0),
                remaining_quantity=(float(payload["remainingQuantity"])
                                    if payload.get("remainingQuantity") is not None else None),
                avg_exec_price=float(payload.get("avgExecPrice") or 0),
            )
            self._last[update.order_id] = update
            fut = self._pending.get(update.order_id)
            if fut and not fut.done() and update.status in TERMINAL_STATUSES:
                fut.set_result(update)

        elif evt["type"] == "POSITIONS_UPDATE":
            self.positions = {p["symbol"]: p for p in (payload or []) if isinstance(p, dict) and p.get("symbol")}

        elif evt["type"] == "QUOTE_UPDATE" and isinstance(payload, dict) and payload.get("symbol"):
            quote = Quote(
                ticker_id=str(payload.get("tickerId", payload["symbol"])),
                bid=payload.get("bid", payload.get("bidPrice")),
                ask=payload.get("ask", payload.get("askPrice")),
                last=payload.get("last", payload.get("price")),
                close=payload.get("close"),
            )
            # Indexée par symbole et par identifiant (ticker ou contrat d'option)
            self.quotes[payload["symbol"]] = quote
            self.quotes[quote.ticker_id] = quote

    async def wait_for_order_update(self, order_id: str, timeout: float = 0.5) -> Optional[OrderUpdate]:
        if not self.connected:
            if self.fallback is not None:
                return await self.fallback.wait_for_order_update(order_id, timeout)
            return None

        last = self._last.get(order_id)
        if last is not None and last.status in TERMINAL_STATUSES:
            del self._last[order_id]
            return last

        fut = asyncio.get_running_loop().create_future()
        self._pending[order_id] = fut
        try:
            update = await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            # Pas de statut terminal : dernier état connu (exécution partielle éventuelle)
            return self._last.get(order_id)
        finally:
            self._pending.pop(order_id, None)
        # Statut terminal livré : plus rien à suivre pour cet ordre
        self._last.pop(order_id, None)
        return update

    def position_qty(self, symbol: str) -> Optional[float]:
        pos = self.positions.get(symbol)
        if pos is None:
            return self.fallback.position_qty(symbol) if (self.fallback and not self.connected) else None
        return float(pos.get("quantity") or pos.get("position") or 0)

    def latest_quote(self, symbol: str) -> Optional[Quote]:
        return self.quotes.get(symbol)

    def stop(self) -> None:
        self.running = False
