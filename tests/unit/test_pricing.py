import pytest

from autoexit.pricing import (
    black_scholes_delta,
    compute_exit_levels,
    gamma_adjusted_level,
    norm_cdf,
    theoretical_delta,
)


def test_norm_cdf_reference_points():
    assert norm_cdf(0) == pytest.approx(0.5, abs=1e-6)
    assert norm_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
    assert norm_cdf(-1.96) == pytest.approx(0.025, abs=1e-4)


def test_call_and_put_delta_bounds():
    call = black_scholes_delta(500, 505, 10, "call")
    put = black_scholes_delta(500, 505, 10, "put")
    assert 0 < call < 1
    assert -1 < put < 0
    assert call - put == pytest.approx(1.0)
    assert black_scholes_delta(700, 500, 30, "call") > 0.99


def test_expiry_collapses_to_step():
    assert black_scholes_delta(510, 500, 0, "call") == 1.0
    assert black_scholes_delta(490, 500, 0, "call") == 0.0
    assert black_scholes_delta(500, 500, 0, "call") == 0.5
    assert black_scholes_delta(490, 500, -1, "put") == -1.0
    assert black_scholes_delta(500, 500, 0, "put") == -0.5


@pytest.mark.parametrize("spot,strike,days", [(0, 500, 5), (500, 0, 5), (-1, 500, 5), (None, 500, 5), ("x", 500, 5)])
def test_bad_inputs_return_neutral_delta(spot, strike, days):
    assert black_scholes_delta(spot, strike, days) == 0.5


def test_theoretical_delta_is_never_live():
    est = theoretical_delta(500, 500, 7)
    assert est.is_live is False
    assert est.source == "black-scholes"


def test_flat_levels_without_delta():
    levels = compute_exit_levels(500, 2, 1, 100, 100, delta=None)
    assert levels.take_profit == 502.0
    assert levels.stop == 498.0
    assert levels.secondary_stop is None

    put = compute_exit_levels(500, 2, 1, 100, 100, delta=None, option_type="put")
    assert put.take_profit == 498.0
    assert put.stop == 502.0


def test_gamma_adjusted_call_levels():
    args = dict(entry_price=500, expected_move=2, quantity=1, entry_delta=0.5, strike=500, days_to_expiry=7)
    tp = gamma_adjusted_level(target_usd=100, goal="profit", **args)
    stop = gamma_adjusted_level(target_usd=100, goal="loss", **args)
    # Le delta augmente à la hausse : la cible est atteinte plus tôt que le niveau plat
    assert 500 < tp < 502
    # et diminue à la baisse : il faut aller plus loin pour perdre le même montant
    assert stop < 498


def test_secondary_stop_is_on_the_opposite_side():
    levels = compute_exit_levels(500, 2, 1, 100, 100, delta=0.5, strike=500, days_to_expiry=7, secondary_stop=True)
    assert levels.secondary_stop > 500
    assert levels.stop < 500
