import asyncio
import logging

import pytest

from autoexit.errors import InsufficientBuyingPower
from autoexit.executor import SlippageExitExecutor, clamp_offset
from autoexit.models import ArmedExit, ExitReason
from conftest import FakeBroker, FakeUpdates
from interfaces.broker import OptionQuote, OrderUpdate, Quote

WORKING = OrderUpdate(status="WORKING", filled_quantity=0, remaining_quantity=5)


def run_exit(executor, reason=ExitReason.STOP_LOSS, quantity=5):
    return asyncio.run(executor.execute_exit("SPY", "SELL", quantity, reason, ticker_id="1"))


def test_at_most_three_attempts_each_one_tick_more_aggressive(caplog):
    broker = FakeBroker()
    updates = FakeUpdates([WORKING] * 5, position=5)
    ex = SlippageExitExecutor(broker, updates, market_open=lambda: False)
    with caplog.at_level(logging.CRITICAL, logger="ExitExecutor"):
        report = run_exit(ex)

    assert len(broker.orders) == 3
    prices = [o.price for o in broker.orders]
    # bid 2.00 - 1 tick - 5 spreads (hors séance), puis un tick de plus à chaque relance
    assert prices == pytest.approx([1.49, 1.48, 1.47])
    assert all(o.order_type == "LMT" and o.outside_regular_trading_hour for o in broker.orders)
    assert report.remaining == 5 and not report.flat
    assert "NOT flat" in caplog.text


def test_stops_as_soon_as_filled(filled_updates):
    broker = FakeBroker()
    ex = SlippageExitExecutor(broker, filled_updates, market_open=lambda: False)
    report = run_exit(ex)
    assert len(broker.orders) == 1
    assert report.flat and report.flat_verified


def test_resubmits_only_the_remaining_quantity():
    broker = FakeBroker()
    updates = FakeUpdates([
        OrderUpdate(status="PARTIALLY_FILLED", filled_quantity=3, remaining_quantity=2),
        OrderUpdate(status="FILLED", filled_quantity=2, remaining_quantity=0),
    ])
    ex = SlippageExitExecutor(broker, updates, market_open=lambda: False)
    report = run_exit(ex)
    assert [o.quantity for o in broker.orders] == [5, 2]
    assert report.remaining == 0


def test_flat_position_stops_retries_without_status():
    broker = FakeBroker()
    ex = SlippageExitExecutor(broker, FakeUpdates([], position=0), market_open=lambda: False)
    report = run_exit(ex)
    assert len(broker.orders) == 1
    assert report.remaining == 0


def test_placement_failure_aborts_remaining_attempts():
    broker = FakeBroker(fail_with=RuntimeError("Insufficient buying power for this order"))
    updates = FakeUpdates([WORKING] * 3, position=5)
    ex = SlippageExitExecutor(broker, updates, market_open=lambda: False)
    report = run_exit(ex)
    assert len(broker.orders) == 1
    assert isinstance(report.error, InsufficientBuyingPower)
    assert "pouvoir d'achat" in report.error.operator_message
    assert report.remaining == 5


def test_market_order_during_regular_session(filled_updates):
    broker = FakeBroker()
    ex = SlippageExitExecutor(broker, filled_updates, market_open=lambda: True)
    run_exit(ex)
    order = broker.orders[0]
    assert order.order_type == "MKT"
    assert order.price is None
    assert not order.outside_regular_trading_hour


def test_http_mode_does_not_claim_verified_flatness():
    broker = FakeBroker()
    updates = FakeUpdates([OrderUpdate(status="FILLED", filled_quantity=5, remaining_quantity=0)], available=False)
    report = run_exit(SlippageExitExecutor(broker, updates, market_open=lambda: False))
    assert report.remaining == 0
    assert not report.flat_verified


def test_arm_precomputes_slippage_tolerances():
    ex = SlippageExitExecutor(FakeBroker(), FakeUpdates())
    cfg = ex.arm(ArmedExit("SPY", "LONG", 2, 500.0, 498.0, 502.0, target_profit_usd=100, max_loss_usd=60, delta=0.5))
    assert cfg.pnl_per_tick == pytest.approx(1.0)
    assert cfg.profit_slippage_price == pytest.approx(5.0)
    assert cfg.loss_slippage_price == pytest.approx(3.0)
    ex.disarm("SPY")
    assert ex.config_for("SPY") is None


def test_offset_clamped_between_one_tick_and_two_spreads():
    assert clamp_offset(5.0, 0.01, 0.2) == 0.2
    assert clamp_offset(0.0, 0.01, 0.2) == 0.01
    assert clamp_offset(float("nan"), 0.01, 0.2) == 0.01
    assert clamp_offset(0.05, 0.01, 0.2) == 0.05


def test_synthetic_spread_when_quote_has_no_book():
    from interfaces.broker import Quote
    broker = FakeBroker(quote=Quote(ticker_id="1", last=4.00))
    ex = SlippageExitExecutor(broker, FakeUpdates([WORKING] * 3, position=5), market_open=lambda: False)
    run_exit(ex)
    # spread synthétique max(2% de 4.00, 10 ticks) = 0.10 ; réf = dernier prix
    assert broker.orders[0].price == pytest.approx(4.00 - 0.01 - 0.5)


def test_option_exit_is_priced_off_the_contract_not_the_underlying():
    broker = FakeBroker(option_quote=OptionQuote(contract_id="OPT", bid=1.00, ask=1.05, close=1.02))
    stock = Quote(ticker_id="1", bid=500.0, ask=500.1, last=500.05)
    updates = FakeUpdates([WORKING] * 3, position=5, quotes={"SPY": stock})
    ex = SlippageExitExecutor(broker, updates, market_open=lambda: False)
    asyncio.run(ex.execute_exit("SPY", "SELL", 5, ExitReason.STOP_LOSS, ticker_id="1",
                                option_contract_id="OPT", best_bid=500.0, best_ask=500.1))

    # bid option 1.00 - 1 tick - 5 spreads de 0.05, puis un tick de plus par relance
    assert [o.price for o in broker.orders] == pytest.approx([0.74, 0.73, 0.72])
    assert all(o.option_contract_id == "OPT" for o in broker.orders)


def test_option_exit_prefers_streamed_contract_quote():
    broker = FakeBroker(option_quote=OptionQuote(contract_id="OPT", bid=9.0, ask=9.1))
    updates = FakeUpdates([OrderUpdate(status="FILLED", filled_quantity=5, remaining_quantity=0)], quotes={
        "SPY": Quote(ticker_id="1", bid=500.0, ask=500.1),
        "OPT": Quote(ticker_id="OPT", bid=1.00, ask=1.05),
    })
    ex = SlippageExitExecutor(broker, updates, market_open=lambda: False)
    asyncio.run(ex.execute_exit("SPY", "SELL", 5, ExitReason.STOP_LOSS, ticker_id="1", option_contract_id="OPT"))
    assert broker.orders[0].price == pytest.approx(0.74)
