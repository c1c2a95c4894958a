"""
Risk Attribution & Optimization Engine
======================================
Risk decomposition, pairwise swap analysis with Monte Carlo validation,
and equal-risk-contribution (risk parity) weights.

Mathematical Foundation:
    Volatility:     σ_p = √(w^T Σ w)
    MCTR:           MCTR_i = (Σ w)_i / σ_p
    %Risk:          RC_i = w_i MCTR_i / σ_p          (Σ_i RC_i = 1)
    iSharpe:        ΔS_i ≈ h [(μ_i − r_f) − S_p MCTR_i] / σ_p
    Swap i → j:     w' = w − δ e_i + δ e_j
                    σ'² = σ_p² + 2δ((Σw)_j − (Σw)_i) + δ²(Σ_jj + Σ_ii − 2Σ_ij)
    Risk parity:    w_i (Σ w)_i = σ_p² / N  for every i
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from portfolio_engine.config import (
    DEFAULT_ISHARPE_STEP,
    DEFAULT_MAX_WORKERS,
    DEFAULT_RISK_FREE_RATE,
    DEFAULT_RISK_PARITY_MAX_ITER,
    DEFAULT_RISK_PARITY_TOLERANCE,
    DEFAULT_SWAP_SIZE,
    DEFAULT_TOP_K,
)
from portfolio_engine.exceptions import ValidationError
from portfolio_engine.sampler import check_cancelled


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
MIN_VOLATILITY: float = 1e-12
MIN_MCTR: float = 1e-4           # optimality ratio is reported as 0 below this


@dataclass(frozen=True)
class SwapMatrix:
    """Closed-form impact of moving δ of NLV from row (sell) to column (buy)."""

    tickers: List[str]
    delta_sharpe: np.ndarray
    delta_vol: np.ndarray
    delta_return: np.ndarray
    current_sharpe: float
    current_vol: float
    current_return: float

    def to_dict(self) -> dict:
        return {
            "tickers": list(self.tickers),
            "deltaSharpe": self.delta_sharpe.tolist(),
            "deltaVol": self.delta_vol.tolist(),
            "deltaReturn": self.delta_return.tolist(),
        }


@dataclass(frozen=True)
class SwapCandidate:
    sell_index: int
    buy_index: int
    sell_ticker: str
    buy_ticker: str
    delta_sharpe: float
    delta_vol: float
    delta_return: float


@dataclass(frozen=True)
class MonteCarloStats:
    """Simulated outcome of one weight vector."""

    label: str
    mean: float
    median: float
    std: float
    sharpe: float
    p_loss: float
    var5: float

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "mean": self.mean,
            "median": self.median,
            "std": self.std,
            "sharpe": self.sharpe,
            "pLoss": self.p_loss,
            "var5": self.var5,
        }


@dataclass(frozen=True)
class ValidatedSwap:
    candidate: SwapCandidate
    mc: MonteCarloStats
    delta_metrics: Dict[str, float]

    def to_dict(self) -> dict:
        c = self.candidate
        return {
            "sellTicker": c.sell_ticker,
            "buyTicker": c.buy_ticker,
            "deltaSharpe": c.delta_sharpe,
            "deltaVol": c.delta_vol,
            "deltaReturn": c.delta_return,
            "mc": self.mc.to_dict(),
            "deltaMetrics": dict(self.delta_metrics),
        }


@dataclass(frozen=True)
class RiskParitySolution:
    weights: np.ndarray
    converged: bool
    iterations: int
    max_deviation: float


# ─────────────────────────────────────────────────────────────
# Portfolio moments
# ─────────────────────────────────────────────────────────────

def portfolio_volatility(weights: np.ndarray, cov_matrix: np.ndarray) -> float:
    variance = float(weights @ cov_matrix @ weights)
    return float(np.sqrt(max(variance, 0.0)))


def portfolio_return(
    weights: np.ndarray, mu: np.ndarray, cash_contribution: float = 0.0
) -> float:
    return float(weights @ mu + cash_contribution)


def sharpe_ratio(expected_return: float, volatility: float, risk_free_rate: float) -> float:
    """(E[R] − r_f) / σ, or 0 when the portfolio carries no risk."""
    if volatility <= MIN_VOLATILITY:
        return 0.0
    return float((expected_return - risk_free_rate) / volatility)


# ─────────────────────────────────────────────────────────────
# Risk attribution
# ─────────────────────────────────────────────────────────────

def compute_mctr(
    weights: np.ndarray, cov_matrix: np.ndarray, portfolio_vol: Optional[float] = None
) -> np.ndarray:
    """
    Marginal contribution to total risk.

    Mathematical Definition:
        MCTR_i = ∂σ_p / ∂w_i = (Σ w)_i / σ_p

    Returns zeros for a riskless portfolio.
    """
    if portfolio_vol is None:
        portfolio_vol = portfolio_volatility(weights, cov_matrix)
    if portfolio_vol <= MIN_VOLATILITY:
        return np.zeros(len(weights))
    return (cov_matrix @ weights) / portfolio_vol


def compute_risk_contribution(
    weights: np.ndarray, mctr: np.ndarray, portfolio_vol: float
) -> np.ndarray:
    """
    Percentage contribution to risk, RC_i = w_i MCTR_i / σ_p.

    By Euler's theorem Σ_i w_i MCTR_i = σ_p, so the contributions sum to 1.
    Short positions can have negative contributions.
    """
    if portfolio_vol <= MIN_VOLATILITY:
        return np.zeros(len(weights))
    return weights * mctr / portfolio_vol


def compute_incremental_sharpe(
    weights: np.ndarray,
    mu: np.ndarray,
    cov_matrix: np.ndarray,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    cash_contribution: float = 0.0,
    step: float = DEFAULT_ISHARPE_STEP,
) -> np.ndarray:
    """
    First-order Sharpe change from adding ``step`` of NLV to each position.

    The addition is financed at the risk-free rate, so the return changes
    by h (μ_i − r_f) and the volatility by h MCTR_i:

        ΔS_i ≈ h [(μ_i − r_f) − S_p MCTR_i] / σ_p

    Equivalently h σ_i (S_i − ρ_ip S_p) / σ_p, the asset's own Sharpe net
    of what its correlation with the book already pays for.

    Parameters
    ----------
    weights : np.ndarray
        Position weights (N,).
    mu : np.ndarray
        Expected returns (N,).
    cov_matrix : np.ndarray
        Covariance matrix (N x N).
    risk_free_rate : float
        Financing rate.
    cash_contribution : float
        Cash leg return included in the portfolio return.
    step : float
        Size of the marginal addition, as a fraction of NLV.

    Returns
    -------
    np.ndarray
        Marginal Sharpe change per position (N,).
    """
    vol = portfolio_volatility(weights, cov_matrix)
    if vol <= MIN_VOLATILITY:
        return np.zeros(len(weights))
    current_sharpe = sharpe_ratio(
        portfolio_return(weights, mu, cash_contribution), vol, risk_free_rate
    )
    mctr = compute_mctr(weights, cov_matrix, vol)
    return step * ((mu - risk_free_rate) - current_sharpe * mctr) / vol


def compute_asset_sharpe(
    mu: np.ndarray, sigma: np.ndarray, risk_free_rate: float = DEFAULT_RISK_FREE_RATE
) -> np.ndarray:
    safe = np.where(sigma > 0, sigma, 1.0)
    return np.where(sigma > 0, (mu - risk_free_rate) / safe, 0.0)


def compute_optimality_ratio(
    mu: np.ndarray, mctr: np.ndarray, risk_free_rate: float = DEFAULT_RISK_FREE_RATE
) -> np.ndarray:
    """
    Excess return per unit of marginal risk, (μ_i − r_f) / MCTR_i.

    A mean-variance optimal book has the same ratio for every asset, so
    dispersion across positions shows where risk budget is misallocated.
    """
    small = np.abs(mctr) < MIN_MCTR
    safe = np.where(small, 1.0, mctr)
    return np.where(small, 0.0, (mu - risk_free_rate) / safe)


# ─────────────────────────────────────────────────────────────
# Swap analysis
# ─────────────────────────────────────────────────────────────

def compute_swap_matrix(
    weights: np.ndarray,
    mu: np.ndarray,
    cov_matrix: np.ndarray,
    tickers: Sequence[str],
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    swap_size: float = DEFAULT_SWAP_SIZE,
    cash_contribution: float = 0.0,
) -> SwapMatrix:
    """
    Sharpe, volatility and return impact of every pairwise swap.

    Algorithm:
        1. Precompute Σ w once
        2. For all (sell i, buy j) at once:
           Δμ  = δ (μ_j − μ_i)
           σ'² = σ_p² + 2δ((Σw)_j − (Σw)_i) + δ²(Σ_jj + Σ_ii − 2Σ_ij)
        3. ΔS = S(μ_p + Δμ, σ') − S_p

    No per-swap covariance products: the whole N x N grid is built from
    broadcast vectors.  The diagonal (no-op swaps) is zero.

    Parameters
    ----------
    weights : np.ndarray
        Current position weights (N,).
    mu : np.ndarray
        Expected returns (N,).
    cov_matrix : np.ndarray
        Covariance matrix (N x N).
    tickers : sequence of str
        Labels in weight order.
    risk_free_rate : float
        Sharpe hurdle.
    swap_size : float
        δ, the amount moved as a fraction of NLV.
    cash_contribution : float
        Cash leg return.

    Returns
    -------
    SwapMatrix
        Rows are the sold position, columns the bought one.
    """
    delta = swap_size
    sigma_w = cov_matrix @ weights
    current_var = float(weights @ sigma_w)
    current_vol = float(np.sqrt(max(current_var, 0.0)))
    current_return = portfolio_return(weights, mu, cash_contribution)
    current_sharpe = sharpe_ratio(current_return, current_vol, risk_free_rate)

    diag = np.diag(cov_matrix)
    delta_return = delta * (mu[None, :] - mu[:, None])
    new_var = (
        current_var
        + 2.0 * delta * (sigma_w[None, :] - sigma_w[:, None])
        + delta ** 2 * (diag[None, :] + diag[:, None] - 2.0 * cov_matrix)
    )
    new_vol = np.sqrt(np.maximum(new_var, 0.0))
    new_return = current_return + delta_return

    safe_vol = np.where(new_vol > MIN_VOLATILITY, new_vol, 1.0)
    new_sharpe = np.where(
        new_vol > MIN_VOLATILITY, (new_return - risk_free_rate) / safe_vol, 0.0
    )

    delta_sharpe = new_sharpe - current_sharpe
    delta_vol = new_vol - current_vol
    for matrix in (delta_sharpe, delta_vol, delta_return):
        np.fill_diagonal(matrix, 0.0)

    return SwapMatrix(
        tickers=list(tickers),
        delta_sharpe=delta_sharpe,
        delta_vol=delta_vol,
        delta_return=delta_return,
        current_sharpe=current_sharpe,
        current_vol=current_vol,
        current_return=current_return,
    )


def rank_swaps(swap_matrix: SwapMatrix, top_k: int = DEFAULT_TOP_K) -> List[SwapCandidate]:
    """Off-diagonal swaps sorted by ΔSharpe, best first."""
    n = len(swap_matrix.tickers)
    sells, buys = np.where(~np.eye(n, dtype=bool))
    scores = swap_matrix.delta_sharpe[sells, buys]
    # stable sort keeps (sell, buy) order among ties
    order = np.argsort(-scores, kind="stable")[:top_k]

    return [
        SwapCandidate(
            sell_index=int(sells[k]),
            buy_index=int(buys[k]),
            sell_ticker=swap_matrix.tickers[sells[k]],
            buy_ticker=swap_matrix.tickers[buys[k]],
            delta_sharpe=float(swap_matrix.delta_sharpe[sells[k], buys[k]]),
            delta_vol=float(swap_matrix.delta_vol[sells[k], buys[k]]),
            delta_return=float(swap_matrix.delta_return[sells[k], buys[k]]),
        )
        for k in order
    ]


def swapped_weights(weights: np.ndarray, candidate: SwapCandidate, swap_size: float) -> np.ndarray:
    new_weights = weights.copy()
    new_weights[candidate.sell_index] -= swap_size
    new_weights[candidate.buy_index] += swap_size
    return new_weights


def simulate_weights(
    asset_returns: np.ndarray,
    weights: np.ndarray,
    label: str,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    cash_contribution: float = 0.0,
) -> MonteCarloStats:
    """Outcome statistics of one weight vector over a fixed set of draws."""
    returns = asset_returns @ weights + cash_contribution
    std = float(np.std(returns))
    mean = float(np.mean(returns))
    return MonteCarloStats(
        label=label,
        mean=mean,
        median=float(np.median(returns)),
        std=std,
        sharpe=sharpe_ratio(mean, std, risk_free_rate),
        p_loss=float(np.mean(returns < 0)),
        var5=float(np.percentile(returns, 5)),
    )


def validate_swaps(
    asset_returns: np.ndarray,
    weights: np.ndarray,
    candidates: Sequence[SwapCandidate],
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    swap_size: float = DEFAULT_SWAP_SIZE,
    cash_contribution: float = 0.0,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel_token=None,
    progress: Optional[ProgressCallback] = None,
):
    """
    Re-price the baseline and each candidate swap by Monte Carlo.

    Every weight vector is evaluated on the same simulated asset returns
    (common random numbers), so differences reflect the swap rather than
    sampling noise.  Candidates run concurrently in a thread pool; the
    matrix products release the GIL.

    Parameters
    ----------
    asset_returns : np.ndarray
        Simulated asset returns shared by every evaluation (n_paths x N).
    weights : np.ndarray
        Current weights (N,).
    candidates : sequence of SwapCandidate
        Swaps to validate, typically the analytic top-K.
    risk_free_rate, swap_size, cash_contribution : float
        As in compute_swap_matrix.
    max_workers : int
        Thread pool size.
    cancel_token : CancellationToken, optional
        Polled before each swap is priced.
    progress : callable, optional
        ``progress(completed, total, "validating")``.

    Returns
    -------
    tuple[MonteCarloStats, list[ValidatedSwap]]
        Baseline statistics and validated swaps sorted by ΔMC Sharpe.
    """
    check_cancelled(cancel_token, "validation")
    baseline = simulate_weights(
        asset_returns, weights, "Baseline", risk_free_rate, cash_contribution
    )
    total = len(candidates)
    if total == 0:
        return baseline, []

    def price(candidate: SwapCandidate) -> ValidatedSwap:
        check_cancelled(cancel_token, "validation")
        stats = simulate_weights(
            asset_returns,
            swapped_weights(weights, candidate, swap_size),
            f"{candidate.sell_ticker}→{candidate.buy_ticker}",
            risk_free_rate,
            cash_contribution,
        )
        return ValidatedSwap(
            candidate=candidate,
            mc=stats,
            delta_metrics={
                "delta_mean": stats.mean - baseline.mean,
                "delta_median": stats.median - baseline.median,
                "delta_p_loss": stats.p_loss - baseline.p_loss,
                "delta_var5": stats.var5 - baseline.var5,
                "delta_mc_sharpe": stats.sharpe - baseline.sharpe,
            },
        )

    validated = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(price, c) for c in candidates]
        try:
            for future in as_completed(futures):
                validated.append(future.result())
                if progress is not None:
                    progress(len(validated), total, "validating")
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    validated.sort(key=lambda v: v.delta_metrics["delta_mc_sharpe"], reverse=True)
    return baseline, validated


# ─────────────────────────────────────────────────────────────
# Risk parity
# ─────────────────────────────────────────────────────────────

def inverse_volatility_weights(cov_matrix: np.ndarray) -> np.ndarray:
    """
    Simple inverse volatility weighting.

    w_i = (1/σ_i) / Σ_j (1/σ_j)
    """
    vols = np.maximum(np.sqrt(np.diag(cov_matrix)), 1e-3)
    inv_vols = 1.0 / vols
    return inv_vols / inv_vols.sum()


def risk_contribution_deviation(weights: np.ndarray, cov_matrix: np.ndarray) -> float:
    """max_i |RC_i − 1/N|"""
    vol = portfolio_volatility(weights, cov_matrix)
    rc = compute_risk_contribution(weights, compute_mctr(weights, cov_matrix, vol), vol)
    return float(np.max(np.abs(rc - 1.0 / len(weights))))


def solve_risk_parity(
    cov_matrix: np.ndarray,
    tolerance: float = DEFAULT_RISK_PARITY_TOLERANCE,
    max_iter: int = DEFAULT_RISK_PARITY_MAX_ITER,
    gross: float = 1.0,
) -> RiskParitySolution:
    """
    Long-only equal-risk-contribution weights.

    Algorithm (cyclical coordinate descent on the convex ERC program
    min ½ y^T Σ y − (1/N) Σ log y_i):
        1. Start from inverse-volatility weights
        2. For each i, with c_i = Σ_{j≠i} Σ_ij y_j, solve the scalar
           first-order condition Σ_ii y_i² + c_i y_i − 1/N = 0:
           y_i = (−c_i + √(c_i² + 4 Σ_ii / N)) / (2 Σ_ii)
        3. w = gross · y / Σ y
        4. Stop when max_i |RC_i − 1/N| < tolerance

    At the optimum y_i (Σ y)_i = 1/N for every i, which is exactly equal
    risk contribution; rescaling does not change the contributions.

    Parameters
    ----------
    cov_matrix : np.ndarray
        Covariance matrix (N x N).
    tolerance : float
        Maximum allowed deviation of any %Risk from 1/N.
    max_iter : int
        Maximum number of full coordinate sweeps.
    gross : float
        Sum of the returned weights.

    Returns
    -------
    RiskParitySolution
        Best-effort weights with ``converged=False`` if the tolerance was
        not met within ``max_iter`` sweeps.
    """
    n = cov_matrix.shape[0]
    if n == 0:
        raise ValidationError("Risk parity needs at least one asset")

    diag = np.diag(cov_matrix)
    if np.any(diag <= 0):
        raise ValidationError("Risk parity needs strictly positive variances")

    budget = 1.0 / n
    y = inverse_volatility_weights(cov_matrix)
    y = y / np.sqrt(float(y @ cov_matrix @ y))

    deviation = risk_contribution_deviation(y, cov_matrix)
    iterations = 0
    while deviation >= tolerance and iterations < max_iter:
        for i in range(n):
            c_i = float(cov_matrix[i] @ y - diag[i] * y[i])
            y[i] = (-c_i + np.sqrt(c_i ** 2 + 4.0 * diag[i] * budget)) / (2.0 * diag[i])
        iterations += 1
        deviation = risk_contribution_deviation(y, cov_matrix)

    converged = deviation < tolerance
    if not converged:
        logger.warning(
            "Risk parity did not converge in %d iterations (max deviation %.2e)",
            iterations,
            deviation,
        )

    return RiskParitySolution(
        weights=gross * y / y.sum(),
        converged=bool(converged),
        iterations=iterations,
        max_deviation=deviation,
    )


def diversification_ratio(weights: np.ndarray, cov_matrix: np.ndarray) -> float:
    """Σ |w_i| σ_i / σ_p: 1 for a single asset, larger when risks offset."""
    vol = portfolio_volatility(weights, cov_matrix)
    if vol <= MIN_VOLATILITY:
        return 0.0
    return float(np.abs(weights) @ np.sqrt(np.diag(cov_matrix)) / vol)
