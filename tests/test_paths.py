import numpy as np
import pytest

from portfolio_engine.paths import (
    aggregate_paths,
    max_drawdowns,
    portfolio_returns,
    terminal_dollars,
)


def test_portfolio_returns_with_cash():
    asset_returns = np.array([[0.10, -0.05], [0.00, 0.20]])
    weights = np.array([0.6, 0.3])
    result = portfolio_returns(asset_returns, weights, cash_weight=0.1, cash_rate=0.05)
    np.testing.assert_allclose(result, [0.06 - 0.015 + 0.005, 0.06 + 0.005])


def test_terminal_dollars():
    np.testing.assert_allclose(terminal_dollars(np.array([-0.1, 0.25]), 1000.0), [900.0, 1250.0])


def test_drawdown_bounds_and_terminal_loss():
    rng = np.random.default_rng(3)
    terminal = rng.normal(0.05, 0.2, 5_000)
    dd = max_drawdowns(terminal, 0.2, n_steps=12, rng=np.random.default_rng(1))

    assert dd.shape == terminal.shape
    assert np.all(dd >= 0.0) and np.all(dd <= 1.0)
    assert np.all(dd >= np.maximum(0.0, -terminal) - 1e-12)
    # intra-period dips make drawdowns exceed terminal losses on average
    assert dd.mean() > np.maximum(0.0, -terminal).mean()


def test_single_step_drawdown_is_terminal_loss():
    terminal = np.array([-0.3, -0.05, 0.0, 0.4])
    dd = max_drawdowns(terminal, 0.2, n_steps=1)
    np.testing.assert_allclose(dd, [0.3, 0.05, 0.0, 0.0], atol=1e-12)


def test_total_loss_caps_drawdown_at_one():
    dd = max_drawdowns(np.array([-1.0, -1.5]), 0.3, n_steps=12, rng=np.random.default_rng(0))
    np.testing.assert_allclose(dd, 1.0, atol=1e-6)


def test_aggregate_paths_is_reproducible():
    rng = np.random.default_rng(5)
    asset_returns = rng.normal(0.05, 0.2, size=(2_000, 3))
    weights = np.array([0.5, 0.3, 0.2])

    a = aggregate_paths(asset_returns, weights, 10_000.0, seed=9)
    b = aggregate_paths(asset_returns, weights, 10_000.0, seed=9)

    assert a.num_paths == 2_000
    np.testing.assert_array_equal(a.max_drawdowns, b.max_drawdowns)
    np.testing.assert_allclose(a.terminal_dollars, 10_000.0 * (1 + a.terminal_returns))
