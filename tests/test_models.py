import warnings

import numpy as np
import pytest

from portfolio_engine.config import FatTailMethod, OptimizationConfig, SimulationConfig
from portfolio_engine.distributions import DistributionParams, Percentiles
from portfolio_engine.exceptions import ValidationError
from portfolio_engine.models import Position, SimulationRequest, positions_from_weights


BELIEF = DistributionParams(mu=0.05, sigma=0.2)


def test_position_normalizes_ticker():
    p = Position(" spy ", 10, 100.0, BELIEF)
    assert p.ticker == "SPY"
    assert p.market_value == 1000.0


def test_position_resolves_percentile_belief():
    p = Position("SPY", 10, 100.0, Percentiles(-0.25, -0.02, 0.08, 0.18, 0.40))
    params = p.distribution_params()
    assert params.sigma == pytest.approx(0.20 / 1.35)


@pytest.mark.parametrize("price", [0.0, -5.0, float("inf")])
def test_position_rejects_bad_price(price):
    with pytest.raises(ValidationError):
        Position("SPY", 10, price, BELIEF)


def test_request_weights_include_shorts_and_cash():
    positions = (
        Position("AAA", 10, 100.0, BELIEF),
        Position("BBB", -5, 100.0, BELIEF),
    )
    request = SimulationRequest(positions, np.eye(2), cash=1000.0, cash_rate=0.05)
    assert request.net_liquidation_value == pytest.approx(1500.0)
    np.testing.assert_allclose(request.weights, [1000 / 1500, -500 / 1500])
    assert request.cash_contribution == pytest.approx(1000 / 1500 * 0.05)


def test_request_correlation_is_read_only():
    source = np.eye(2)
    request = SimulationRequest(
        (Position("AAA", 1, 1.0, BELIEF), Position("BBB", 1, 1.0, BELIEF)), source
    )
    source[0, 1] = 0.5
    assert request.correlation[0, 1] == 0.0
    with pytest.raises(ValueError):
        request.correlation[0, 1] = 0.5


@pytest.mark.parametrize(
    "corr",
    [
        np.eye(3),
        np.array([[1.0, 0.2], [0.3, 1.0]]),
        np.array([[1.0, np.nan], [np.nan, 1.0]]),
        [[1.0, 0.2], [0.2]],
    ],
)
def test_request_rejects_bad_correlation(corr):
    positions = (Position("AAA", 1, 1.0, BELIEF), Position("BBB", 1, 1.0, BELIEF))
    with pytest.raises(ValidationError):
        SimulationRequest(positions, corr)


def test_request_rejects_duplicates_and_empty():
    with pytest.raises(ValidationError):
        SimulationRequest((), np.eye(0))
    with pytest.raises(ValidationError):
        SimulationRequest(
            (Position("AAA", 1, 1.0, BELIEF), Position("aaa", 1, 1.0, BELIEF)), np.eye(2)
        )


def test_request_rejects_non_positive_nlv():
    with pytest.raises(ValidationError):
        SimulationRequest((Position("AAA", -1, 100.0, BELIEF),), np.eye(1))


def test_positions_from_weights_aligns_by_ticker():
    beliefs = {"AAA": BELIEF, "BBB": BELIEF}
    positions = positions_from_weights(
        {"BBB": 0.25, "AAA": 0.75}, beliefs, notional=1000.0, tickers=["AAA", "BBB"]
    )
    assert [p.ticker for p in positions] == ["AAA", "BBB"]
    assert positions[0].market_value == pytest.approx(750.0)


def test_positions_from_weights_normalizes_small_drift():
    beliefs = {"AAA": BELIEF, "BBB": BELIEF}
    with pytest.warns(UserWarning, match="auto-normalizing"):
        positions = positions_from_weights({"AAA": 0.5, "BBB": 0.50001}, beliefs)
    total = sum(p.market_value for p in positions)
    assert total == pytest.approx(100_000.0)


def test_positions_from_weights_rejects_bad_sum():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        with pytest.raises(ValidationError):
            positions_from_weights({"AAA": 0.5, "BBB": 0.3}, {"AAA": BELIEF, "BBB": BELIEF})


def test_simulation_config_accepts_string_method():
    config = SimulationConfig(fat_tail_method="gaussianCopula")
    assert config.fat_tail_method is FatTailMethod.GAUSSIAN_COPULA
    assert config.to_dict()["fatTailMethod"] == "gaussianCopula"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"num_paths": 10},
        {"fat_tail_method": "laplace"},
        {"drawdown_threshold": 1.5},
        {"tail_df": 2},
        {"batch_size": 0},
    ],
)
def test_simulation_config_validation(kwargs):
    with pytest.raises(ValidationError):
        SimulationConfig(**kwargs)


def test_optimization_config_validation():
    assert OptimizationConfig().to_dict()["topK"] == 15
    with pytest.raises(ValidationError):
        OptimizationConfig(swap_size=0.0)
    with pytest.raises(ValidationError):
        OptimizationConfig(max_workers=0)
