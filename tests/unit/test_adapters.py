import asyncio
import json

import httpx
import pytest

from adapters.paper import PaperBroker
from adapters.webull import WebullBroker, parse_bar
from autoexit.errors import InsufficientBuyingPower, SessionExpired, StrikeUnavailable
from interfaces.broker import OrderRequest, Quote


def webull(handler, mode="PAPER", trade_token=None):
    return WebullBroker("http://proxy", "tok", "dev", "ACC", trade_token=trade_token, mode=mode,
                        transport=httpx.MockTransport(handler))


def test_place_order_goes_through_signing_proxy_once():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"orderId": 123})

    broker = webull(handler)
    req = OrderRequest(side="SELL", ticker_id="913243251", quantity=2, order_type="LMT", price=1.234)
    placed = asyncio.run(broker.place_order(req))
    assert placed.order_id == "123"
    assert len(seen) == 1
    env = seen[0]
    assert env["method"] == "POST"
    assert env["path"] == "/api/paper/v1/webull/ACC/orders"
    assert env["headers"]["access_token"] == "tok"
    assert env["body"]["lmtPrice"] == "1.23"
    assert env["body"]["action"] == "SELL"


def test_option_order_on_real_account_requires_trade_token():
    broker = webull(lambda r: httpx.Response(200, json={"orderId": 1}), mode="REAL")
    req = OrderRequest(side="SELL", ticker_id="1", quantity=1, order_type="MKT", option_contract_id="99")
    with pytest.raises(SessionExpired):
        asyncio.run(broker.place_order(req))


def test_broker_rejection_is_classified_and_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(400, json={"msg": "Insufficient buying power"})

    with pytest.raises(InsufficientBuyingPower):
        asyncio.run(webull(handler).place_order(OrderRequest(side="BUY", ticker_id="1", quantity=1, price=1.0)))
    assert len(calls) == 1


def test_auth_failure_raises_session_expired():
    broker = webull(lambda r: httpx.Response(401, json={}))
    with pytest.raises(SessionExpired):
        asyncio.run(broker.get_quote("1"))


def test_reads_are_retried_on_server_errors():
    responses = [httpx.Response(503), httpx.Response(200, json={"data": {"bidList": [{"price": "1.5"}],
                                                                          "askList": [{"price": "1.6"}],
                                                                          "close": "1.55"}})]
    broker = webull(lambda r: responses.pop(0))
    quote = asyncio.run(broker.get_quote("1"))
    assert (quote.bid, quote.ask, quote.last) == (1.5, 1.6, 1.55)


def test_bars_are_parsed_and_sorted():
    rows = ["1704207660,100,100.2,100.5,99.8,0,1200", "1704207600,99.9,100,100.1,99.7,0,900", "garbage"]
    broker = webull(lambda r: httpx.Response(200, json={"data": rows}))
    bars = asyncio.run(broker.get_historical_bars("1"))
    assert [b.time for b in bars] == [1704207600, 1704207660]
    assert bars[1].close == 100.2 and bars[1].high == 100.5
    assert parse_bar({"time": 1, "open": 1, "high": 2, "low": 0.5, "close": 1.5}).close == 1.5
    assert parse_bar(None) is None


def test_option_quote_live_only_with_market_delta():
    broker = webull(lambda r: httpx.Response(200, json={"data": {"close": "3.1", "delta": "0.42"}}))
    oq = asyncio.run(broker.get_option_quote("99"))
    assert oq.live and oq.delta == 0.42
    broker = webull(lambda r: httpx.Response(200, json={"data": {"close": "3.1"}}))
    assert not asyncio.run(broker.get_option_quote("99")).live


def test_missing_strike_lists_available_ones():
    chain = {"data": [{"direction": "call", "strikePrice": "505", "tickerId": 1},
                      {"direction": "call", "strikePrice": "510", "tickerId": 2},
                      {"direction": "put", "strikePrice": "500", "tickerId": 3}]}
    broker = webull(lambda r: httpx.Response(200, json=chain))
    assert asyncio.run(broker.find_option_contract("SPY", "1", 510, "2024-01-19")) == "2"
    with pytest.raises(StrikeUnavailable) as exc:
        asyncio.run(broker.find_option_contract("SPY", "1", 507.5, "2024-01-19"))
    assert exc.value.available == [505.0, 510.0]


def test_paper_broker_fills_marketable_orders_only():
    broker = PaperBroker(quote=Quote(ticker_id="1", bid=2.0, ask=2.1), positions={"1": 5})
    passive = asyncio.run(broker.place_order(OrderRequest(side="SELL", ticker_id="1", quantity=5, price=2.5)))
    assert passive.order_id.startswith("SIM-")
    assert passive.raw["filledQuantity"] == 0
    asyncio.run(broker.place_order(OrderRequest(side="SELL", ticker_id="1", quantity=5, order_type="MKT")))
    snapshot = asyncio.run(broker.get_account_snapshot("1"))
    assert snapshot["positions"] == [{"tickerId": "1", "position": 0.0}]
    assert snapshot["orders"][-1]["status"] == "FILLED"


def test_paper_broker_partial_fills():
    broker = PaperBroker(fill_ratio=0.5, positions={"1": 4})
    placed = asyncio.run(broker.place_order(OrderRequest(side="SELL", ticker_id="1", quantity=4, order_type="MKT")))
    assert placed.raw["status"] == "PARTIALLY_FILLED"
    assert placed.raw["remainingQuantity"] == 2
