from autoexit.errors import (
    ExceedsPosition,
    ExitAlreadyArmed,
    InsufficientBuyingPower,
    OrderPlacementError,
    SessionExpired,
    StrikeUnavailable,
    classify_broker_error,
)


def test_classify_broker_messages():
    assert isinstance(classify_broker_error("Insufficient buying power"), InsufficientBuyingPower)
    assert isinstance(classify_broker_error(RuntimeError("Naked option selling not allowed")), ExceedsPosition)
    assert isinstance(classify_broker_error("Quantity exceeds current position"), ExceedsPosition)
    assert isinstance(classify_broker_error("Session expired, please log in"), SessionExpired)
    generic = classify_broker_error("price out of band")
    assert type(generic) is OrderPlacementError


def test_operator_messages_are_specific():
    assert "position" in ExceedsPosition("exceeds").operator_message
    assert OrderPlacementError("x").operator_message.startswith("x | ")


def test_strike_unavailable_lists_strikes():
    err = StrikeUnavailable("SPY", 512.5, [515, 505, 510])
    assert "505, 510, 515" in str(err)
    assert err.available == [505.0, 510.0, 515.0]
    assert "aucun" in str(StrikeUnavailable("SPY", 1, []))


def test_exit_already_armed_names_symbol():
    assert "SPY" in str(ExitAlreadyArmed("SPY"))
