import numpy as np
import pytest

from portfolio_engine.config import SimulationConfig
from portfolio_engine.distributions import DistributionParams, Percentiles
from portfolio_engine.models import Position, SimulationRequest, equal_weight_positions


@pytest.fixture
def two_asset_request():
    """μ = [.08, .05], σ = [.20, .15], ρ = .3, equal weights, 10,000 paths."""
    positions = equal_weight_positions(
        ["AAA", "BBB"],
        [DistributionParams(mu=0.08, sigma=0.20), DistributionParams(mu=0.05, sigma=0.15)],
    )
    corr = np.array([[1.0, 0.3], [0.3, 1.0]])
    return SimulationRequest(
        positions=positions,
        correlation=corr,
        config=SimulationConfig(num_paths=10_000, seed=42),
    )


@pytest.fixture
def four_asset_request():
    beliefs = {
        "SPY": Percentiles(-0.22, -0.02, 0.08, 0.17, 0.32),
        "QQQ": Percentiles(-0.32, -0.05, 0.10, 0.22, 0.45),
        "TLT": Percentiles(-0.15, -0.04, 0.03, 0.09, 0.20),
        "GLD": Percentiles(-0.18, -0.03, 0.06, 0.14, 0.28),
    }
    positions = (
        Position("SPY", 100, 500.0, beliefs["SPY"]),
        Position("QQQ", 60, 450.0, beliefs["QQQ"]),
        Position("TLT", 200, 90.0, beliefs["TLT"]),
        Position("GLD", 80, 220.0, beliefs["GLD"]),
    )
    corr = np.array([
        [1.00, 0.85, -0.25, 0.05],
        [0.85, 1.00, -0.30, 0.00],
        [-0.25, -0.30, 1.00, 0.25],
        [0.05, 0.00, 0.25, 1.00],
    ])
    return SimulationRequest(
        positions=positions,
        correlation=corr,
        config=SimulationConfig(num_paths=5_000, seed=7),
        cash=10_000.0,
        cash_rate=0.04,
    )


@pytest.fixture
def three_asset_inputs():
    sigmas = np.array([0.20, 0.15, 0.30])
    corr = np.array([
        [1.0, 0.4, 0.2],
        [0.4, 1.0, 0.1],
        [0.2, 0.1, 1.0],
    ])
    return sigmas, corr


@pytest.fixture
def three_asset_cov(three_asset_inputs):
    sigmas, corr = three_asset_inputs
    return corr * np.outer(sigmas, sigmas)
