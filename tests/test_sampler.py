import numpy as np
import pytest
from scipy import stats

from portfolio_engine.config import FatTailMethod, SimulationConfig
from portfolio_engine.distributions import DistributionParams
from portfolio_engine.exceptions import DecompositionError, SimulationCancelled
from portfolio_engine.sampler import (
    CorrelatedSampler,
    apply_cornish_fisher,
    cholesky_factor,
    normalized_cholesky,
)
from portfolio_engine.tasks import CancellationToken


COV = np.array([[0.04, 0.009], [0.009, 0.0225]])
PARAMS = [DistributionParams(0.08, 0.20), DistributionParams(0.05, 0.15)]


def make_sampler(params=PARAMS, cov=COV, **config):
    config.setdefault("num_paths", 20_000)
    return CorrelatedSampler(params, cov, SimulationConfig(**config))


def test_cholesky_reconstructs_matrix():
    L = cholesky_factor(COV)
    np.testing.assert_allclose(L @ L.T, COV)
    assert np.allclose(L, np.tril(L))


def test_cholesky_regularizes_singular_matrix():
    singular = np.array([[1.0, 1.0], [1.0, 1.0]])
    L = cholesky_factor(singular)
    np.testing.assert_allclose(L @ L.T, singular, atol=1e-5)


def test_cholesky_rejects_non_finite():
    with pytest.raises(DecompositionError):
        cholesky_factor(np.array([[np.nan, 0.0], [0.0, 1.0]]))


def test_decomposition_error_is_linalg_error():
    assert issubclass(DecompositionError, np.linalg.LinAlgError)


def test_normalized_cholesky_is_correlation_factor():
    L = normalized_cholesky(COV)
    corr = L @ L.T
    np.testing.assert_allclose(np.diag(corr), 1.0)
    assert corr[0, 1] == pytest.approx(0.009 / (0.2 * 0.15))


def test_gaussian_moments_and_correlation():
    returns = make_sampler().sample()
    assert returns.shape == (20_000, 2)
    np.testing.assert_allclose(returns.mean(axis=0), [0.08, 0.05], atol=0.01)
    np.testing.assert_allclose(returns.std(axis=0), [0.20, 0.15], rtol=0.05)
    assert np.corrcoef(returns.T)[0, 1] == pytest.approx(0.3, abs=0.03)


def test_same_seed_same_draws():
    a = make_sampler(seed=11).sample()
    b = make_sampler(seed=11).sample()
    c = make_sampler(seed=12).sample()
    np.testing.assert_array_equal(a, b)
    assert not np.allclose(a, c)


@pytest.mark.parametrize("use_qmc", [False, True])
def test_batch_size_does_not_change_draws(use_qmc):
    one = make_sampler(num_paths=4_000, batch_size=4_000, use_qmc=use_qmc).sample()
    many = make_sampler(num_paths=4_000, batch_size=750, use_qmc=use_qmc).sample()
    np.testing.assert_allclose(one, many, rtol=1e-12, atol=1e-15)


def test_qmc_mean_is_accurate():
    returns = make_sampler(num_paths=4_096, use_qmc=True).sample()
    np.testing.assert_allclose(returns.mean(axis=0), [0.08, 0.05], atol=0.003)


def test_student_t_fattens_tails_and_keeps_variance():
    fat = [DistributionParams(0.0, 0.2, tail_df=5), DistributionParams(0.0, 0.15, tail_df=5)]
    sampler = make_sampler(params=fat, num_paths=50_000)
    assert sampler.uses_chi2
    assert sampler.dimension == 3

    returns = sampler.sample()
    assert stats.kurtosis(returns[:, 0]) > 1.0
    assert returns[:, 0].std() == pytest.approx(0.2, rel=0.1)


def test_shared_df_override():
    fat = [DistributionParams(0.0, 0.2, tail_df=5), DistributionParams(0.0, 0.15, tail_df=12)]
    assert make_sampler(params=fat).shared_df == 5.0
    assert make_sampler(params=fat, tail_df=8).shared_df == 8.0
    assert not make_sampler().uses_chi2


def test_gaussian_copula_per_asset_tails():
    params = [DistributionParams(0.0, 0.2, tail_df=4), DistributionParams(0.0, 0.15, tail_df=30)]
    sampler = make_sampler(
        params=params, num_paths=50_000, fat_tail_method=FatTailMethod.GAUSSIAN_COPULA
    )
    assert not sampler.uses_chi2
    returns = sampler.sample()
    assert stats.kurtosis(returns[:, 0]) > 1.0
    assert abs(stats.kurtosis(returns[:, 1])) < 0.2


def test_skew_shifts_distribution_shape():
    params = [DistributionParams(0.0, 0.2, skew=0.8), DistributionParams(0.0, 0.15, skew=-0.8)]
    returns = make_sampler(params=params).sample()
    assert stats.skew(returns[:, 0]) > 0.3
    assert stats.skew(returns[:, 1]) < -0.3


def test_cornish_fisher_is_monotone():
    z = np.linspace(-8, 8, 2001)[:, None]
    for s in (-1.0, -0.4, 0.0, 0.4, 1.0):
        adjusted = apply_cornish_fisher(z, np.array([s]))
        assert np.all(np.diff(adjusted[:, 0]) >= 0)


def test_asset_returns_are_clamped():
    wild = [DistributionParams(0.0, 4.0, tail_df=3), DistributionParams(0.0, 0.15)]
    cov = np.array([[16.0, 0.0], [0.0, 0.0225]])
    returns = make_sampler(params=wild, cov=cov).sample()
    assert returns.min() >= -1.0
    assert returns.max() <= 10.0


def test_progress_reported_per_batch():
    calls = []
    make_sampler(num_paths=1_000, batch_size=400).sample(
        progress=lambda c, t, phase: calls.append((c, t, phase))
    )
    assert calls == [(400, 1000, "sampling"), (800, 1000, "sampling"), (1000, 1000, "sampling")]


def test_cancelled_token_stops_sampling():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(SimulationCancelled):
        make_sampler().sample(cancel_token=token)
