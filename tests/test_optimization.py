import numpy as np
import pytest

from portfolio_engine.optimization import (
    compute_incremental_sharpe,
    compute_mctr,
    compute_optimality_ratio,
    compute_risk_contribution,
    compute_swap_matrix,
    diversification_ratio,
    inverse_volatility_weights,
    portfolio_return,
    portfolio_volatility,
    rank_swaps,
    risk_contribution_deviation,
    sharpe_ratio,
    solve_risk_parity,
    validate_swaps,
)


RF = 0.04


@pytest.fixture
def book(three_asset_cov):
    weights = np.array([0.6, 0.5, -0.1])
    mu = np.array([0.08, 0.06, 0.10])
    return weights, mu, three_asset_cov


def test_risk_contributions_sum_to_one_with_shorts(book):
    weights, _, cov = book
    vol = portfolio_volatility(weights, cov)
    rc = compute_risk_contribution(weights, compute_mctr(weights, cov, vol), vol)
    assert rc.sum() == pytest.approx(1.0)
    assert rc[2] < 0


def test_mctr_matches_finite_differences(book):
    weights, _, cov = book
    eps = 1e-6
    mctr = compute_mctr(weights, cov)
    for i in range(len(weights)):
        bump = np.zeros_like(weights)
        bump[i] = eps
        numeric = (
            portfolio_volatility(weights + bump, cov) - portfolio_volatility(weights - bump, cov)
        ) / (2 * eps)
        assert mctr[i] == pytest.approx(numeric, rel=1e-6)


def test_riskless_portfolio_has_zero_attribution():
    cov = np.zeros((2, 2))
    weights = np.array([0.5, 0.5])
    assert np.all(compute_mctr(weights, cov) == 0.0)
    assert sharpe_ratio(0.05, 0.0, RF) == 0.0


def test_incremental_sharpe_matches_finite_differences(book):
    weights, mu, cov = book
    cash = 0.002
    step = 1e-6
    base = sharpe_ratio(
        portfolio_return(weights, mu, cash), portfolio_volatility(weights, cov), RF
    )
    isharpe = compute_incremental_sharpe(weights, mu, cov, RF, cash, step)

    for i in range(len(weights)):
        bumped = weights.copy()
        bumped[i] += step
        # the addition is financed at the risk-free rate
        bumped_sharpe = sharpe_ratio(
            portfolio_return(bumped, mu, cash - step * RF),
            portfolio_volatility(bumped, cov),
            RF,
        )
        assert isharpe[i] == pytest.approx(bumped_sharpe - base, rel=1e-3, abs=1e-11)


def test_optimality_ratio_ignores_tiny_mctr():
    ratio = compute_optimality_ratio(np.array([0.08, 0.10]), np.array([0.0, 0.12]), RF)
    assert ratio[0] == 0.0
    assert ratio[1] == pytest.approx(0.5)


def test_swap_matrix_matches_brute_force(book):
    weights, mu, cov = book
    delta = 0.05
    matrix = compute_swap_matrix(weights, mu, cov, ["A", "B", "C"], RF, delta)

    base_ret = portfolio_return(weights, mu)
    base_vol = portfolio_volatility(weights, cov)
    base_sharpe = sharpe_ratio(base_ret, base_vol, RF)
    assert matrix.current_sharpe == pytest.approx(base_sharpe)

    for i in range(3):
        for j in range(3):
            if i == j:
                assert matrix.delta_sharpe[i, j] == 0.0
                assert matrix.delta_vol[i, j] == 0.0
                assert matrix.delta_return[i, j] == 0.0
                continue
            swapped = weights.copy()
            swapped[i] -= delta
            swapped[j] += delta
            ret = portfolio_return(swapped, mu)
            vol = portfolio_volatility(swapped, cov)
            assert matrix.delta_return[i, j] == pytest.approx(ret - base_ret, abs=1e-12)
            assert matrix.delta_vol[i, j] == pytest.approx(vol - base_vol, abs=1e-12)
            assert matrix.delta_sharpe[i, j] == pytest.approx(
                sharpe_ratio(ret, vol, RF) - base_sharpe, abs=1e-10
            )


@pytest.mark.parametrize("top_k", [0, 3, 6, 20])
def test_rank_swaps(book, top_k):
    weights, mu, cov = book
    matrix = compute_swap_matrix(weights, mu, cov, ["A", "B", "C"], RF)
    ranked = rank_swaps(matrix, top_k)

    assert len(ranked) == min(top_k, 6)
    scores = [c.delta_sharpe for c in ranked]
    assert scores == sorted(scores, reverse=True)
    assert all(c.sell_index != c.buy_index for c in ranked)


def test_validate_swaps_agrees_with_analytic_sign():
    mu = np.array([0.02, 0.12])
    sigma = np.array([0.30, 0.15])
    cov = np.diag(sigma ** 2)
    weights = np.array([0.5, 0.5])
    draws = np.random.default_rng(11).normal(mu, sigma, size=(20_000, 2))

    matrix = compute_swap_matrix(weights, mu, cov, ["LAG", "LEAD"], RF, swap_size=0.05)
    candidates = rank_swaps(matrix, top_k=2)
    assert (candidates[0].sell_ticker, candidates[0].buy_ticker) == ("LAG", "LEAD")

    seen = []
    baseline, validated = validate_swaps(
        draws,
        weights,
        candidates,
        RF,
        swap_size=0.05,
        max_workers=2,
        progress=lambda done, total, phase: seen.append((done, total, phase)),
    )

    assert baseline.label == "Baseline"
    assert len(validated) == 2
    deltas = [v.delta_metrics["delta_mc_sharpe"] for v in validated]
    assert deltas == sorted(deltas, reverse=True)
    for swap in validated:
        assert np.sign(swap.delta_metrics["delta_mc_sharpe"]) == np.sign(
            swap.candidate.delta_sharpe
        )
        assert swap.mc.mean - baseline.mean == pytest.approx(
            swap.delta_metrics["delta_mean"]
        )
    assert seen[-1] == (2, 2, "validating")


def test_validate_swaps_without_candidates():
    draws = np.random.default_rng(0).normal(size=(500, 2))
    baseline, validated = validate_swaps(draws, np.array([0.5, 0.5]), [])
    assert validated == []
    assert baseline.p_loss == pytest.approx(np.mean(draws.sum(axis=1) * 0.5 < 0))


def test_inverse_volatility_weights(three_asset_cov):
    w = inverse_volatility_weights(three_asset_cov)
    assert w.sum() == pytest.approx(1.0)
    assert w[1] > w[0] > w[2]


@pytest.mark.parametrize("gross", [1.0, 1.5])
def test_risk_parity_equalizes_contributions(three_asset_cov, gross):
    solution = solve_risk_parity(three_asset_cov, tolerance=1e-8, gross=gross)

    assert solution.converged
    assert solution.weights.sum() == pytest.approx(gross)
    assert np.all(solution.weights > 0)
    vol = portfolio_volatility(solution.weights, three_asset_cov)
    rc = compute_risk_contribution(
        solution.weights, compute_mctr(solution.weights, three_asset_cov, vol), vol
    )
    np.testing.assert_allclose(rc, 1.0 / 3.0, atol=1e-7)
    assert solution.max_deviation < 1e-8


def test_risk_parity_uncorrelated_is_inverse_volatility():
    cov = np.diag([0.04, 0.0225])
    solution = solve_risk_parity(cov)
    assert solution.iterations == 0
    np.testing.assert_allclose(solution.weights, inverse_volatility_weights(cov))


def test_risk_parity_flags_non_convergence(three_asset_cov):
    solution = solve_risk_parity(three_asset_cov, tolerance=1e-12, max_iter=1)
    assert not solution.converged
    assert solution.iterations == 1
    assert solution.max_deviation == pytest.approx(
        risk_contribution_deviation(solution.weights, three_asset_cov)
    )


def test_diversification_ratio(three_asset_cov):
    assert diversification_ratio(np.array([1.0, 0.0, 0.0]), three_asset_cov) == pytest.approx(1.0)
    assert diversification_ratio(np.array([0.4, 0.4, 0.2]), three_asset_cov) > 1.0
