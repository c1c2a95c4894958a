"""
Path Aggregator
===============
Turns simulated asset returns into portfolio-level path outcomes.

Mathematical Foundation:
    Portfolio:   R_p = w^T r + w_cash · r_cash
    Dollars:     V_T = V_0 (1 + R_p)
    Drawdown:    DD = max_k (1 − V_k / max_{j≤k} V_j)

Intra-period values V_k come from a Brownian bridge in log space pinned at
0 (start) and log(1 + R_p) (end), so every drawdown is consistent with the
terminal outcome of its path.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from portfolio_engine.config import DEFAULT_DRAWDOWN_STEPS


logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
LOG_FLOOR_RETURN: float = -1.0 + 1e-9   # total loss is bridged to almost-zero value


@dataclass(frozen=True)
class PathEnsemble:
    terminal_returns: np.ndarray
    terminal_dollars: np.ndarray
    max_drawdowns: np.ndarray

    @property
    def num_paths(self) -> int:
        return len(self.terminal_returns)


def portfolio_returns(
    asset_returns: np.ndarray,
    weights: np.ndarray,
    cash_weight: float = 0.0,
    cash_rate: float = 0.0,
) -> np.ndarray:
    """
    Portfolio aggregation: R_p = w^T r for each path, plus the cash leg.

    Parameters
    ----------
    asset_returns : np.ndarray
        Simulated asset returns (n_paths x N).
    weights : np.ndarray
        Position weights as fractions of NLV (N,). Negative for shorts.
    cash_weight : float
        Cash as a fraction of NLV.
    cash_rate : float
        One-period return on cash.

    Returns
    -------
    np.ndarray
        Portfolio returns (n_paths,).
    """
    return asset_returns @ weights + cash_weight * cash_rate


def terminal_dollars(returns: np.ndarray, starting_value: float) -> np.ndarray:
    return starting_value * (1.0 + returns)


def max_drawdowns(
    terminal_returns: np.ndarray,
    portfolio_vol: float,
    n_steps: int = DEFAULT_DRAWDOWN_STEPS,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Maximum peak-to-trough decline of each path over the horizon.

    Algorithm:
        1. X = log(1 + R_p)  (terminal log value)
        2. W_k = Σ_{j≤k} σ/√n · ε_j,  ε ~ N(0, 1)
        3. Bridge: L_k = W_k − (k/n) W_n + (k/n) X,  L_0 = 0, L_n = X
        4. DD = 1 − exp(min_k (L_k − max_{j≤k} L_j))

    The running peak is the only state carried along a path, and the
    result is never smaller than the terminal loss max(0, −R_p).

    Parameters
    ----------
    terminal_returns : np.ndarray
        Portfolio returns (n_paths,).
    portfolio_vol : float
        Portfolio volatility over the horizon (log-space bridge scale).
    n_steps : int
        Number of sub-periods traced per path.
    rng : np.random.Generator, optional
        Source of the bridge innovations.

    Returns
    -------
    np.ndarray
        Maximum drawdowns in [0, 1] (n_paths,).
    """
    if rng is None:
        rng = np.random.default_rng()

    x = np.log1p(np.maximum(terminal_returns, LOG_FLOOR_RETURN))
    n_paths = len(x)

    if n_steps <= 1 or portfolio_vol <= 0:
        log_path = x[:, None]
    else:
        step_vol = portfolio_vol / np.sqrt(n_steps)
        w = np.cumsum(rng.standard_normal((n_paths, n_steps)) * step_vol, axis=1)
        frac = np.arange(1, n_steps + 1) / n_steps
        log_path = w - frac * w[:, -1:] + frac * x[:, None]
        # pin the endpoint exactly
        log_path[:, -1] = x

    log_path = np.hstack([np.zeros((n_paths, 1)), log_path])
    running_peak = np.maximum.accumulate(log_path, axis=1)
    worst = np.min(log_path - running_peak, axis=1)

    drawdowns = -np.expm1(worst)
    return np.clip(drawdowns, 0.0, 1.0)


def aggregate_paths(
    asset_returns: np.ndarray,
    weights: np.ndarray,
    starting_value: float,
    cash_weight: float = 0.0,
    cash_rate: float = 0.0,
    portfolio_vol: Optional[float] = None,
    n_steps: int = DEFAULT_DRAWDOWN_STEPS,
    seed: Optional[int] = None,
) -> PathEnsemble:
    """
    Portfolio returns, terminal dollars and drawdowns for every path.

    ``portfolio_vol`` defaults to the standard deviation of the simulated
    terminal log values.  Drawdown innovations use their own generator so
    they do not disturb the asset-return stream.
    """
    returns = portfolio_returns(asset_returns, weights, cash_weight, cash_rate)

    if portfolio_vol is None:
        portfolio_vol = float(np.std(np.log1p(np.maximum(returns, LOG_FLOOR_RETURN))))

    drawdowns = max_drawdowns(
        returns, portfolio_vol, n_steps, np.random.default_rng(seed)
    )
    logger.debug(
        "Aggregated %d paths (σ_p=%.4f, %d drawdown steps)",
        len(returns),
        portfolio_vol,
        n_steps,
    )

    return PathEnsemble(
        terminal_returns=returns,
        terminal_dollars=terminal_dollars(returns, starting_value),
        max_drawdowns=drawdowns,
    )
