"""
Risk Metrics Module
===================
Empirical VaR / CVaR from the simulated distribution, with Gaussian
closed forms for comparison.

All figures are expressed in return space: VaR at 5% is the 5th
percentile of R_p (a negative number for a loss), so VaR5 ≤ VaR10 and
CVaR ≤ VaR.

Mathematical Foundation:
    Empirical VaR:   VaR_α = Q_α(R_p)
    Empirical CVaR:  CVaR_α = E[R_p | R_p ≤ VaR_α]
    Parametric VaR:  VaR_α = μ_p + σ_p · Φ⁻¹(α)
    Parametric ES:   ES_α  = μ_p − σ_p · φ(Φ⁻¹(α)) / α
"""

from typing import Dict, Optional, Sequence

import numpy as np
from scipy import stats

from portfolio_engine.config import VAR_LEVELS
from portfolio_engine.exceptions import ValidationError
from portfolio_engine.statistics import clean_distribution, is_degenerate


def _check_level(level: float) -> None:
    if not 0.0 < level < 1.0:
        raise ValidationError(f"Tail level must be in (0, 1), got {level}")


# ─────────────────────────────────────────────────────────────
# Empirical (simulated) VaR
# ─────────────────────────────────────────────────────────────

def value_at_risk(returns, level: float = 0.05) -> Optional[float]:
    """
    Compute Value-at-Risk from the simulated return distribution.

    Parameters
    ----------
    returns : array-like
        Simulated portfolio returns.
    level : float
        Tail probability α (default: 0.05).

    Returns
    -------
    float or None
        α-quantile of returns; ``None`` if there are no finite values or
        the sample has zero variance.
    """
    _check_level(level)
    clean = clean_distribution(returns)
    if is_degenerate(clean):
        return None
    return float(np.percentile(clean, level * 100))


def conditional_value_at_risk(returns, level: float = 0.05) -> Optional[float]:
    """
    Compute Conditional VaR (Expected Shortfall) from simulated returns.

    CVaR = E[R_p | R_p ≤ VaR]
    Mean of returns at or below the VaR threshold; ``None`` when the
    sample is empty or constant.
    """
    _check_level(level)
    clean = clean_distribution(returns)
    if is_degenerate(clean):
        return None
    threshold = np.percentile(clean, level * 100)
    tail = clean[clean <= threshold]
    return float(np.mean(tail))


def tail_risk_metrics(
    returns, levels: Sequence[float] = VAR_LEVELS
) -> Dict[str, Optional[float]]:
    """
    VaR and CVaR at every requested level.

    Returns
    -------
    dict
        ``{"var5": ..., "cvar5": ..., "var10": ..., "cvar10": ...}``
    """
    metrics = {}
    for level in levels:
        label = f"{round(level * 100):d}"
        metrics[f"var{label}"] = value_at_risk(returns, level)
        metrics[f"cvar{label}"] = conditional_value_at_risk(returns, level)
    return metrics


# ─────────────────────────────────────────────────────────────
# Parametric (Gaussian) VaR
# ─────────────────────────────────────────────────────────────

def parametric_var(
    portfolio_mean: float,
    portfolio_std: float,
    level: float = 0.05,
) -> float:
    """
    Compute Parametric VaR assuming Gaussian returns.

    Mathematical Definition:
        VaR_α = μ_p + σ_p · z_α

    Where z_α is the standard normal α-quantile (negative for α < 0.5).
    """
    _check_level(level)
    z_alpha = stats.norm.ppf(level)
    return float(portfolio_mean + z_alpha * portfolio_std)


def parametric_es(
    portfolio_mean: float,
    portfolio_std: float,
    level: float = 0.05,
) -> float:
    """
    Compute Parametric Expected Shortfall under the Gaussian assumption.

    Mathematical Definition:
        ES_α = μ_p − σ_p · φ(z_α) / α

    Where φ is the standard normal PDF.
    """
    _check_level(level)
    z_alpha = stats.norm.ppf(level)
    phi_z = stats.norm.pdf(z_alpha)
    return float(portfolio_mean - portfolio_std * phi_z / level)
