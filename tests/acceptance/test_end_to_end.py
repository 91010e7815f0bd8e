import asyncio

from fastapi.testclient import TestClient

from adapters.paper import PaperBroker
from api import server
from autoexit.candles import RealtimeCandleBuilder
from autoexit.executor import SlippageExitExecutor
from autoexit.models import ExitReason
from autoexit.order_updates import HttpPollUpdates
from autoexit.poller import CandlePoller
from autoexit.session import ArmParams, ExitCoordinator, TradingSession
from autoexit.storage import JsonFileStore
from conftest import BASE_TS
from interfaces.broker import Bar, OptionQuote, Quote


def build_engine(tmp_path):
    broker = PaperBroker(quote=Quote(ticker_id="1", bid=2.0, ask=2.1, last=2.05), positions={"1": 5})
    broker.bars = [Bar(time=BASE_TS - 600 + i * 60, open=500, high=500.3, low=499.7, close=500) for i in range(10)]
    store = JsonFileStore(tmp_path / "store.json")
    builder = RealtimeCandleBuilder("SPY", clock=lambda: BASE_TS + 30)
    session = TradingSession(symbol="SPY", ticker_id="1", builder=builder)
    executor = SlippageExitExecutor(broker, HttpPollUpdates(broker, "1", "SPY"), market_open=lambda: False)
    coordinator = ExitCoordinator(session, executor, store)
    poller = CandlePoller(broker, builder, "1", on_bar=coordinator.on_minute_bar)
    return broker, store, coordinator, poller


def test_stop_loss_flattens_paper_position(tmp_path):
    broker, store, coordinator, poller = build_engine(tmp_path)

    async def scenario():
        assert await poller.load_history() == 10
        coordinator.arm_exit(ArmParams(quantity=5, entry_price=500.0, stop_price=498.0, take_profit_price=503.0))
        for price in (499.5, 498.6, 498.1):
            coordinator.on_price(price, BASE_TS + 5)
        assert coordinator.session.armed.state.value == "ARMED"
        coordinator.on_price(497.95, BASE_TS + 6)
        await coordinator.wait_for_exits()

    asyncio.run(scenario())
    report = coordinator.session.reports[0]
    assert report.reason is ExitReason.STOP_LOSS
    assert report.remaining == 0 and not report.flat_verified
    assert len(report.attempts) == 1
    assert broker.positions["1"] == 0
    assert store.get("armed_exit:SPY") is None
    assert JsonFileStore(tmp_path / "store.json").get("armed_exit:SPY") is None


def test_armed_exit_survives_restart(tmp_path):
    _, _, coordinator, _ = build_engine(tmp_path)
    coordinator.arm_exit(ArmParams(quantity=5, entry_price=500.0, stop_price=498.0, take_profit_price=503.0))

    _, _, restarted, _ = build_engine(tmp_path)
    restored = restarted.restore_armed_exit()
    assert restored is not None and restored.stop_price == 498.0


def test_operator_api_drives_the_engine(tmp_path):
    broker, store, coordinator, _ = build_engine(tmp_path)
    server.attach(coordinator)
    client = TestClient(server.app)

    r = client.post("/exit/arm", json={"quantity": 5, "entry_price": 500.0, "expected_move": 2.0,
                                       "target_profit_usd": 100, "max_loss_usd": 100})
    assert r.status_code == 200
    assert client.get("/storage/load", params={"key": "armed_exit:SPY"}).json()["value"]["stop_price"] == 498.0

    r = client.post("/exit/flatten")
    assert r.json()["status"] == "flat"
    assert broker.positions["1"] == 0
    assert client.get("/storage/load", params={"key": "armed_exit:SPY"}).status_code == 404


def test_option_exit_fills_against_the_contract_book(tmp_path):
    broker = PaperBroker(quote=Quote(ticker_id="1", bid=500.0, ask=500.1, last=500.05),
                         positions={"OPT": 5},
                         option_quotes={"OPT": OptionQuote(contract_id="OPT", bid=1.00, ask=1.05, close=1.02)})
    builder = RealtimeCandleBuilder("SPY", clock=lambda: BASE_TS + 30)
    session = TradingSession(symbol="SPY", ticker_id="1", builder=builder)
    executor = SlippageExitExecutor(broker, HttpPollUpdates(broker, "OPT", "SPY"), market_open=lambda: False)
    coordinator = ExitCoordinator(session, executor, JsonFileStore(tmp_path / "store.json"))

    async def scenario():
        coordinator.on_quote(await broker.get_quote("1"))
        coordinator.arm_exit(ArmParams(quantity=5, entry_price=500.0, stop_price=498.0,
                                       take_profit_price=503.0, option_contract_id="OPT"))
        return await coordinator.manual_flatten()

    report = asyncio.run(scenario())
    assert report.flat
    assert broker.positions["OPT"] == 0
    assert broker.orders[0]["avgExecPrice"] < 1.05
