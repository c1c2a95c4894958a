"""
Correlated Sampler (Monte Carlo Core)
=====================================
Generates correlated, fat-tailed, skewed one-period asset returns.

Mathematical Foundation:
    Cholesky:        R = L L^T          (L normalized to the implied correlation)
    Normals:         z = Φ⁻¹(u),  u ~ U(0,1)^N  (PRNG or scrambled Sobol)
    Correlate:       z_c = L z
    Student-t:       z_t = z_c · √(ν / χ²_ν) · √((ν−2)/ν)
    Copula:          z_i = F⁻¹_{t,ν_i}(Φ(z_c,i)) · √((ν_i−2)/ν_i)
    Cornish-Fisher:  z' = z + s (z² − 1) / 6
    Return:          r = clip(μ + σ z', −1, 10)

Normals always come from the inverse normal CDF (never Box-Muller) so the
low-discrepancy structure of a Sobol sequence survives the transform.
"""

import logging
import math
from typing import Callable, Optional, Sequence

import numpy as np
from scipy import stats
from scipy.stats import qmc

from portfolio_engine.config import FatTailMethod, SimulationConfig
from portfolio_engine.covariance import regularize_covariance, validate_covariance_matrix
from portfolio_engine.distributions import GAUSSIAN_DF, DistributionParams
from portfolio_engine.exceptions import (
    DecompositionError,
    SimulationCancelled,
    ValidationError,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
MIN_ASSET_RETURN: float = -1.0    # a long position cannot lose more than 100%
MAX_ASSET_RETURN: float = 10.0
UNIFORM_EPSILON: float = 1e-12    # keeps Φ⁻¹ and χ²⁻¹ finite


def check_cancelled(cancel_token, phase: str) -> None:
    """Raise SimulationCancelled if the token has been set."""
    if cancel_token is not None and cancel_token.is_cancelled():
        raise SimulationCancelled(f"Run cancelled during {phase}")


def cholesky_factor(cov_matrix: np.ndarray) -> np.ndarray:
    """
    Perform Cholesky decomposition of the covariance matrix.

    Decomposes Σ into lower triangular L such that Σ = L L^T.
    If the matrix is not positive definite, it is regularized and the
    decomposition retried once with stronger diagonal loading.

    Parameters
    ----------
    cov_matrix : np.ndarray
        Covariance matrix (N x N). Must be symmetric.

    Returns
    -------
    np.ndarray
        Lower triangular Cholesky factor L (N x N).

    Raises
    ------
    DecompositionError
        If decomposition fails even after regularization.
    """
    cov_matrix = np.asarray(cov_matrix, dtype=float)
    if not np.all(np.isfinite(cov_matrix)):
        raise DecompositionError("Covariance matrix contains NaN or infinite entries")

    if not validate_covariance_matrix(cov_matrix):
        logger.warning("Covariance matrix is not PSD; regularizing before Cholesky")
        cov_matrix = regularize_covariance(cov_matrix)

    try:
        L = np.linalg.cholesky(cov_matrix)
    except np.linalg.LinAlgError:
        # Aggressive regularization fallback
        logger.warning("Cholesky failed; retrying with stronger regularization")
        try:
            L = np.linalg.cholesky(regularize_covariance(cov_matrix, epsilon=1e-6))
        except np.linalg.LinAlgError as exc:
            raise DecompositionError(
                "Cholesky decomposition failed after regularization"
            ) from exc

    return L


def normalized_cholesky(cov_matrix: np.ndarray) -> np.ndarray:
    """
    Cholesky factor of the correlation implied by Σ.

    Each row of L is divided by its norm, so L L^T has a unit diagonal and
    the draws it produces are standard normals; σ is applied afterwards.
    """
    L = cholesky_factor(cov_matrix)
    row_norms = np.linalg.norm(L, axis=1)
    return L / row_norms[:, None]


class PseudoRandomSource:
    """Uniforms from numpy's default generator (PCG64)."""

    def __init__(self, dimension: int, seed: int):
        self.dimension = dimension
        self._rng = np.random.default_rng(seed)

    def draw(self, n: int) -> np.ndarray:
        return self._rng.random((n, self.dimension))


class SobolSource:
    """
    Uniforms from a scrambled Sobol sequence.

    The whole run is generated up front as a power-of-two block, so the
    balance properties of the sequence hold for the paths actually used,
    and batches are consecutive slices of it.
    """

    def __init__(self, dimension: int, seed: int, n_total: int):
        self.dimension = dimension
        sobol = qmc.Sobol(d=dimension, scramble=True, rng=np.random.default_rng(seed))
        m = max(1, math.ceil(math.log2(n_total)))
        self._points = sobol.random_base2(m)
        self._offset = 0

    def draw(self, n: int) -> np.ndarray:
        end = self._offset + n
        if end > len(self._points):
            raise ValidationError("Sobol source exhausted")
        block = self._points[self._offset:end]
        self._offset = end
        return block


def apply_cornish_fisher(z: np.ndarray, skew: np.ndarray) -> np.ndarray:
    """
    Second-order Cornish-Fisher skew adjustment.

    z' = z + s (z² − 1) / 6 is monotone only where 1 + s z / 3 > 0.  Draws
    past the turning point z* = −3 / s are held at z*, so the mapping is
    non-decreasing and the order of paths is preserved.
    """
    skew = np.asarray(skew, dtype=float)
    if not np.any(skew):
        return z

    with np.errstate(divide="ignore"):
        turning_point = np.where(skew != 0, -3.0 / skew, 0.0)
    z = np.where(skew > 0, np.maximum(z, turning_point), z)
    z = np.where(skew < 0, np.minimum(z, turning_point), z)
    return z + skew * (z ** 2 - 1.0) / 6.0


class CorrelatedSampler:
    """
    Draws one-period asset returns for a fixed set of marginals and Σ.

    Parameters
    ----------
    params : sequence of DistributionParams
        Per-asset μ, σ, skew and tail_df.
    cov_matrix : np.ndarray
        Shrunk covariance matrix (N x N) whose implied correlation couples
        the marginals.
    config : SimulationConfig
        Path count, fat-tail method, QMC switch, seed and batch size.
    """

    def __init__(
        self,
        params: Sequence[DistributionParams],
        cov_matrix: np.ndarray,
        config: SimulationConfig,
    ):
        cov_matrix = np.asarray(cov_matrix, dtype=float)
        if cov_matrix.shape != (len(params), len(params)):
            raise ValidationError(
                f"Covariance shape {cov_matrix.shape} doesn't match {len(params)} assets"
            )

        self.config = config
        self.n_assets = len(params)
        self.mu = np.array([p.mu for p in params], dtype=float)
        self.sigma = np.sqrt(np.diag(cov_matrix))
        self.skew = np.array([p.skew for p in params], dtype=float)
        self.tail_dfs = np.array([p.tail_df for p in params], dtype=float)
        self.factor = normalized_cholesky(cov_matrix)

        if config.tail_df is not None:
            self.shared_df = float(config.tail_df)
        else:
            self.shared_df = float(self.tail_dfs.min())

        self.uses_chi2 = (
            config.fat_tail_method == FatTailMethod.STUDENT_T
            and self.shared_df < GAUSSIAN_DF
        )

    @property
    def dimension(self) -> int:
        # one extra uniform per path feeds the shared χ² draw
        return self.n_assets + (1 if self.uses_chi2 else 0)

    def _make_source(self, n_paths: int):
        if self.config.use_qmc:
            return SobolSource(self.dimension, self.config.seed, n_paths)
        return PseudoRandomSource(self.dimension, self.config.seed)

    def transform(self, uniforms: np.ndarray) -> np.ndarray:
        """
        Map a block of uniforms (n x dimension) to asset returns (n x N).
        """
        u = np.clip(uniforms, UNIFORM_EPSILON, 1.0 - UNIFORM_EPSILON)

        z = stats.norm.ppf(u[:, : self.n_assets])
        z = z @ self.factor.T

        if self.config.fat_tail_method == FatTailMethod.STUDENT_T:
            if self.uses_chi2:
                nu = self.shared_df
                chi2 = stats.chi2.ppf(u[:, self.n_assets], nu)
                # √(ν/χ²) · √((ν−2)/ν) = √((ν−2)/χ²)
                z = z * np.sqrt((nu - 2.0) / chi2)[:, None]
        else:
            fat = self.tail_dfs < GAUSSIAN_DF
            if fat.any():
                dfs = self.tail_dfs[fat]
                u_marg = np.clip(stats.norm.cdf(z[:, fat]), UNIFORM_EPSILON, 1.0 - UNIFORM_EPSILON)
                z[:, fat] = stats.t.ppf(u_marg, dfs) * np.sqrt((dfs - 2.0) / dfs)

        z = apply_cornish_fisher(z, self.skew)

        returns = self.mu + self.sigma * z
        return np.clip(returns, MIN_ASSET_RETURN, MAX_ASSET_RETURN)

    def sample(
        self,
        n_paths: Optional[int] = None,
        cancel_token=None,
        progress: Optional[ProgressCallback] = None,
    ) -> np.ndarray:
        """
        Simulate asset returns in batches.

        The uniform stream is consumed sequentially, so the output does not
        depend on the batch size.  Progress is reported and the cancellation
        token polled once per batch.

        Parameters
        ----------
        n_paths : int, optional
            Number of paths (default: config.num_paths).
        cancel_token : CancellationToken, optional
            Checked between batches.
        progress : callable, optional
            ``progress(completed, total, phase)``.

        Returns
        -------
        np.ndarray
            Simulated asset returns (n_paths x N).

        Raises
        ------
        SimulationCancelled
            If the token is set before the last batch finishes.
        """
        n_paths = n_paths or self.config.num_paths
        batch_size = self.config.batch_size
        source = self._make_source(n_paths)

        out = np.empty((n_paths, self.n_assets))
        completed = 0
        while completed < n_paths:
            check_cancelled(cancel_token, "sampling")
            size = min(batch_size, n_paths - completed)
            out[completed:completed + size] = self.transform(source.draw(size))
            completed += size
            if progress is not None:
                progress(completed, n_paths, "sampling")

        logger.debug(
            "Sampled %d paths x %d assets (method=%s, qmc=%s, ν=%.1f)",
            n_paths,
            self.n_assets,
            self.config.fat_tail_method.value,
            self.config.use_qmc,
            self.shared_df,
        )
        return out
