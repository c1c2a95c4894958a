"""
Covariance Estimation Module
============================
Repairs the user's correlation matrix, builds the covariance matrix and
shrinks it toward a constant-correlation target (Ledoit-Wolf).

Mathematical Foundation:
    Covariance:   S = D R D,   D = diag(σ_1, ..., σ_N)
    Target:       F_ii = S_ii,  F_ij = r̄ σ_i σ_j
    Shrinkage:    Σ = (1 − δ) S + δ F
    Intensity:    δ* = clip(κ / T, 0, 1),  κ = (π − ρ) / γ
"""

import logging
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
import pandas as pd

from portfolio_engine.config import TRADING_DAYS_PER_YEAR
from portfolio_engine.exceptions import ValidationError


logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
EIGEN_EPSILON: float = 1e-8
MIN_SIGMA: float = 1e-4
SYMMETRY_TOLERANCE: float = 1e-8


@dataclass(frozen=True)
class ShrinkageResult:
    covariance: np.ndarray
    correlation: np.ndarray
    intensity: float
    average_correlation: float
    repaired: bool


def validate_correlation_matrix(corr: np.ndarray) -> np.ndarray:
    """
    Reject correlation input that cannot be repaired.

    Out-of-range entries and non-PSD matrices are repairable and pass
    this check; shape, finiteness and symmetry problems do not.

    Raises
    ------
    ValidationError
        If the matrix is not square, not finite, or not symmetric.
    """
    corr = np.asarray(corr, dtype=float)
    if corr.ndim != 2 or corr.shape[0] != corr.shape[1]:
        raise ValidationError(f"Correlation matrix must be square, got shape {corr.shape}")
    if not np.all(np.isfinite(corr)):
        raise ValidationError("Correlation matrix contains NaN or infinite entries")
    if not np.allclose(corr, corr.T, atol=SYMMETRY_TOLERANCE):
        raise ValidationError("Correlation matrix must be symmetric")
    return corr


def repair_correlation_matrix(
    corr: np.ndarray, epsilon: float = EIGEN_EPSILON
) -> Tuple[np.ndarray, bool]:
    """
    Project a correlation matrix onto valid, strictly positive definite ones.

    Algorithm:
        1. Symmetrize and clip entries to [-1, 1], diagonal = 1
        2. Eigen-decompose and clip eigenvalues below ε up to ε
        3. Rescale R ← D^{-1/2} R D^{-1/2} so the diagonal is 1 again
        4. Write the diagonal as exactly 1.0

    Parameters
    ----------
    corr : np.ndarray
        Candidate correlation matrix (N x N).
    epsilon : float
        Eigenvalue floor.

    Returns
    -------
    tuple[np.ndarray, bool]
        (valid correlation matrix, whether anything had to change)
    """
    corr = validate_correlation_matrix(corr)
    original = corr.copy()

    repaired_corr = np.clip((corr + corr.T) / 2.0, -1.0, 1.0)
    np.fill_diagonal(repaired_corr, 1.0)

    eigenvalues, eigenvectors = np.linalg.eigh(repaired_corr)
    if eigenvalues.min() < epsilon:
        clipped = np.maximum(eigenvalues, epsilon)
        repaired_corr = (eigenvectors * clipped) @ eigenvectors.T
        scale = np.sqrt(np.diag(repaired_corr))
        repaired_corr = repaired_corr / np.outer(scale, scale)
        repaired_corr = np.clip((repaired_corr + repaired_corr.T) / 2.0, -1.0, 1.0)
        np.fill_diagonal(repaired_corr, 1.0)
        logger.warning(
            "Correlation matrix was not positive definite (min eigenvalue %.3e); "
            "clipped eigenvalues to %.1e",
            eigenvalues.min(),
            epsilon,
        )

    repaired = not np.array_equal(original, repaired_corr)
    if repaired:
        logger.info(
            "Correlation matrix repaired (max entry change %.4f)",
            float(np.max(np.abs(original - repaired_corr))),
        )
    return repaired_corr, repaired


def validate_covariance_matrix(cov_matrix: np.ndarray) -> bool:
    """
    Check if covariance matrix is symmetric and positive semi-definite.

    Parameters
    ----------
    cov_matrix : np.ndarray
        Covariance matrix to validate.

    Returns
    -------
    bool
        True if valid, False otherwise.
    """
    if not np.all(np.isfinite(cov_matrix)):
        return False

    if not np.allclose(cov_matrix, cov_matrix.T, atol=1e-10):
        return False

    eigenvalues = np.linalg.eigvalsh(cov_matrix)
    return bool(np.all(eigenvalues >= -1e-10))


def regularize_covariance(
    cov_matrix: np.ndarray, epsilon: float = 1e-8
) -> np.ndarray:
    """
    Symmetrize and add ε to the diagonal (Tikhonov regularization).

    Any eigenvalue still below ε afterwards is clipped so the result is
    strictly positive definite.
    """
    n = cov_matrix.shape[0]
    cov_matrix = (cov_matrix + cov_matrix.T) / 2.0 + epsilon * np.eye(n)

    eigenvalues, eigenvectors = np.linalg.eigh(cov_matrix)
    if eigenvalues.min() < epsilon:
        eigenvalues = np.maximum(eigenvalues, epsilon)
        cov_matrix = (eigenvectors * eigenvalues) @ eigenvectors.T
        cov_matrix = (cov_matrix + cov_matrix.T) / 2.0

    return cov_matrix


def build_covariance_matrix(sigmas: np.ndarray, corr: np.ndarray) -> np.ndarray:
    """Σ = D R D, with degenerate volatilities floored at MIN_SIGMA."""
    sigmas = np.asarray(sigmas, dtype=float)
    degenerate = ~np.isfinite(sigmas) | (sigmas < MIN_SIGMA)
    if degenerate.any():
        logger.warning(
            "Zero-variance or invalid volatility for %d asset(s); using %.0e",
            int(degenerate.sum()),
            MIN_SIGMA,
        )
        sigmas = np.where(degenerate, MIN_SIGMA, sigmas)
    return corr * np.outer(sigmas, sigmas)


def correlation_from_covariance(cov_matrix: np.ndarray) -> np.ndarray:
    vols = np.sqrt(np.maximum(np.diag(cov_matrix), 0.0))
    safe = np.where(vols > 0, vols, 1.0)
    corr = cov_matrix / np.outer(safe, safe)
    corr = np.clip(corr, -1.0, 1.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def average_correlation(corr: np.ndarray) -> float:
    """Mean off-diagonal correlation r̄ (0 for a single asset)."""
    n = corr.shape[0]
    if n < 2:
        return 0.0
    upper = corr[np.triu_indices(n, k=1)]
    return float(upper.mean())


def constant_correlation_target(cov_matrix: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Ledoit-Wolf target: keep variances, replace every correlation by r̄.

    Returns
    -------
    tuple[np.ndarray, float]
        (target matrix F, r̄)
    """
    vols = np.sqrt(np.diag(cov_matrix))
    r_bar = average_correlation(correlation_from_covariance(cov_matrix))
    target = r_bar * np.outer(vols, vols)
    np.fill_diagonal(target, np.diag(cov_matrix))
    return target, r_bar


def shrinkage_intensity(
    cov_matrix: np.ndarray,
    n_observations: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Ledoit-Wolf constant-correlation intensity for a covariance matrix
    assumed to be estimated from ``n_observations`` Gaussian samples.

    Without the underlying return history the asymptotic moments are
    taken in closed form under normality:

        π_ij        = S_ii S_jj + S_ij²
        AsyCov(s_ii, s_ij) = 2 S_ii S_ij
        ρ           = Σ_i π_ii + Σ_{i≠j} 2 r̄ σ_i σ_j S_ij
        γ           = ‖F − S‖²_F

    Parameters
    ----------
    cov_matrix : np.ndarray
        Sample covariance S (N x N).
    n_observations : int
        Length T of the (notional) sample behind S.

    Returns
    -------
    float
        Shrinkage intensity δ* in [0, 1].
    """
    target, r_bar = constant_correlation_target(cov_matrix)
    gamma = float(np.sum((target - cov_matrix) ** 2))
    if gamma <= 1e-18:
        # Sample already has constant correlation: nothing to gain
        return 0.0

    variances = np.diag(cov_matrix)
    vols = np.sqrt(variances)

    pi_matrix = np.outer(variances, variances) + cov_matrix ** 2
    pi_hat = float(pi_matrix.sum())

    off_diagonal = ~np.eye(cov_matrix.shape[0], dtype=bool)
    rho_off = 2.0 * r_bar * np.outer(vols, vols) * cov_matrix
    rho_hat = float(np.trace(pi_matrix) + rho_off[off_diagonal].sum())

    kappa = (pi_hat - rho_hat) / gamma
    return float(np.clip(kappa / n_observations, 0.0, 1.0))


def ledoit_wolf_covariance(
    returns: Union[np.ndarray, pd.DataFrame],
) -> Tuple[np.ndarray, float]:
    """
    Sample-based Ledoit-Wolf (2003) shrinkage toward constant correlation.

    Parameters
    ----------
    returns : np.ndarray or pd.DataFrame
        Return history (T x N).

    Returns
    -------
    tuple[np.ndarray, float]
        (shrunk covariance matrix, intensity δ*)

    Raises
    ------
    ValidationError
        If fewer than two observations or any non-finite value.
    """
    if isinstance(returns, pd.DataFrame):
        returns = np.ascontiguousarray(returns.values)
    x = np.asarray(returns, dtype=float)
    if x.ndim != 2 or x.shape[0] < 2:
        raise ValidationError("Ledoit-Wolf needs a T x N return matrix with T >= 2")
    if not np.all(np.isfinite(x)):
        raise ValidationError("Return history contains NaN or infinite values")

    t, n = x.shape
    x = x - x.mean(axis=0)
    sample = x.T @ x / t
    variances = np.diag(sample)
    vols = np.sqrt(variances)

    target, r_bar = constant_correlation_target(sample)

    y = x ** 2
    phi_matrix = y.T @ y / t - sample ** 2
    phi = float(phi_matrix.sum())

    theta_matrix = (x ** 3).T @ x / t - variances[:, None] * sample
    np.fill_diagonal(theta_matrix, 0.0)
    safe_vols = np.where(vols > 0, vols, 1.0)
    rho = float(
        np.trace(phi_matrix)
        + r_bar * np.sum(np.outer(1.0 / safe_vols, vols) * theta_matrix)
    )

    gamma = float(np.sum((target - sample) ** 2))
    if gamma <= 1e-18:
        return sample, 0.0

    kappa = (phi - rho) / gamma
    intensity = float(np.clip(kappa / t, 0.0, 1.0))
    logger.debug("Ledoit-Wolf shrinkage: δ* = %.3f, r̄ = %.3f", intensity, r_bar)

    return intensity * target + (1.0 - intensity) * sample, intensity


def shrink_covariance(
    sigmas: np.ndarray,
    corr: np.ndarray,
    intensity: float = None,
    n_observations: int = TRADING_DAYS_PER_YEAR,
) -> ShrinkageResult:
    """
    Full covariance pipeline used by every engine run.

    Algorithm:
        1. Repair R to a valid correlation matrix
        2. S = D R D
        3. δ = given intensity, or the Ledoit-Wolf optimum for T observations
        4. Σ = (1 − δ) S + δ F
        5. If Σ still fails the PSD check, regularize it

    Parameters
    ----------
    sigmas : np.ndarray
        Per-asset volatilities (N,).
    corr : np.ndarray
        Correlation matrix (N x N).
    intensity : float, optional
        Fixed shrinkage intensity in [0, 1].
    n_observations : int
        Sample length behind the correlation estimate.

    Returns
    -------
    ShrinkageResult
    """
    valid_corr, repaired = repair_correlation_matrix(corr)
    sample = build_covariance_matrix(sigmas, valid_corr)

    if intensity is None:
        intensity = shrinkage_intensity(sample, n_observations)
    elif not 0.0 <= intensity <= 1.0:
        raise ValidationError(f"Shrinkage intensity must be in [0, 1], got {intensity}")

    target, r_bar = constant_correlation_target(sample)
    cov_matrix = (1.0 - intensity) * sample + intensity * target

    if not validate_covariance_matrix(cov_matrix):
        logger.warning("Shrunk covariance failed the PSD check; regularizing")
        cov_matrix = regularize_covariance(cov_matrix)
        repaired = True

    logger.debug("Covariance shrinkage δ = %.4f toward r̄ = %.3f", intensity, r_bar)

    return ShrinkageResult(
        covariance=cov_matrix,
        correlation=correlation_from_covariance(cov_matrix),
        intensity=float(intensity),
        average_correlation=r_bar,
        repaired=repaired,
    )
