"""
Statistics Engine
=================
Distribution summaries, histograms, loss probabilities and scenario
contribution breakdowns over the simulated paths.

Mathematical Foundation:
    Percentile:    linear interpolation on the sorted sample
    P(loss > t):   (1/n) Σ 1{R_p < −t}
    Contribution:  c_i(s) = mean_{paths near s} w_i r_i
    Conservation:  Σ_i c_i(s) + w_cash r_cash = R_p(s)

Degenerate input (no finite values, zero variance) produces summaries
flagged ``available=False`` with ``None`` fields instead of NaN.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy import stats

from portfolio_engine.config import (
    DEFAULT_HISTOGRAM_BINS,
    DEFAULT_SCENARIO_WINDOW,
    LOSS_THRESHOLDS,
    TERMINAL_PERCENTILES,
)


logger = logging.getLogger(__name__)

SCENARIO_PERCENTILES = (5, 25, 50, 75, 95)


@dataclass(frozen=True)
class DistributionSummary:
    available: bool
    count: int
    mean: Optional[float] = None
    median: Optional[float] = None
    std: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    skewness: Optional[float] = None
    excess_kurtosis: Optional[float] = None
    percentiles: Dict[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "count": self.count,
            "mean": self.mean,
            "median": self.median,
            "std": self.std,
            "min": self.min,
            "max": self.max,
            "skewness": self.skewness,
            "excessKurtosis": self.excess_kurtosis,
            "percentiles": dict(self.percentiles),
        }


@dataclass(frozen=True)
class Histogram:
    bin_edges: List[float]
    counts: List[int]
    percentages: List[float]

    def to_dict(self) -> dict:
        return {
            "binEdges": list(self.bin_edges),
            "counts": list(self.counts),
            "percentages": list(self.percentages),
        }


@dataclass(frozen=True)
class ScenarioContribution:
    """Per-position attribution of one scenario's portfolio return."""

    scenario: str
    target_return: float
    scenario_return: float
    contributions: Dict[str, float]
    cash: float
    paths_used: int

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario,
            "targetReturn": self.target_return,
            "scenarioReturn": self.scenario_return,
            "contributions": dict(self.contributions),
            "cash": self.cash,
            "pathsUsed": self.paths_used,
        }


def clean_distribution(values) -> np.ndarray:
    """Flatten to float and drop NaN / infinite entries."""
    arr = np.asarray(values, dtype=float).ravel()
    finite = np.isfinite(arr)
    if not finite.all():
        logger.warning("Dropped %d non-finite values", int((~finite).sum()))
    return arr[finite]


def is_degenerate(clean: np.ndarray) -> bool:
    """True when a cleaned sample has fewer than two values or no spread."""
    return clean.size < 2 or float(clean.max()) <= float(clean.min())


def percentile_key(level: float) -> str:
    return f"p{level:g}"


def compute_percentiles(
    values, levels: Sequence[float] = TERMINAL_PERCENTILES
) -> Dict[str, Optional[float]]:
    """
    Percentiles by linear interpolation on the sorted sample.

    Returns ``{"p5": ..., "p50": ...}``; every value is ``None`` when the
    sample is empty or has zero variance.
    """
    clean = clean_distribution(values)
    if is_degenerate(clean):
        return {percentile_key(q): None for q in levels}
    qs = np.percentile(clean, levels)
    return {percentile_key(q): float(v) for q, v in zip(levels, qs)}


def summarize_distribution(
    values, levels: Sequence[float] = TERMINAL_PERCENTILES
) -> DistributionSummary:
    """
    Compute moments and percentiles of a simulated distribution.

    Parameters
    ----------
    values : array-like
        Simulated outcomes.
    levels : sequence of float
        Percentile levels in [0, 100].

    Returns
    -------
    DistributionSummary
        ``available=False`` when there are no finite values or the sample
        has zero variance.
    """
    clean = clean_distribution(values)
    if is_degenerate(clean):
        if clean.size:
            logger.warning("Distribution has zero variance; summary unavailable")
        return DistributionSummary(
            available=False,
            count=int(clean.size),
            percentiles={percentile_key(q): None for q in levels},
        )

    return DistributionSummary(
        available=True,
        count=int(clean.size),
        mean=float(np.mean(clean)),
        median=float(np.median(clean)),
        std=float(np.std(clean)),
        min=float(np.min(clean)),
        max=float(np.max(clean)),
        skewness=float(stats.skew(clean)),
        excess_kurtosis=float(stats.kurtosis(clean)),
        percentiles=compute_percentiles(clean, levels),
    )


def compute_histogram(values, bins: int = DEFAULT_HISTOGRAM_BINS) -> Optional[Histogram]:
    """
    Linear bins between the sample min and max.

    Percentages sum to 100.  Returns ``None`` for an empty or constant
    sample.
    """
    clean = clean_distribution(values)
    if is_degenerate(clean):
        return None
    lo, hi = float(clean.min()), float(clean.max())

    counts, edges = np.histogram(clean, bins=bins, range=(lo, hi))
    percentages = counts / clean.size * 100.0
    return Histogram(
        bin_edges=edges.tolist(),
        counts=counts.tolist(),
        percentages=percentages.tolist(),
    )


def loss_key(threshold: float) -> str:
    if threshold == 0:
        return "prob_breakeven"
    return f"prob{round(threshold * 100):d}"


def prob_loss(
    returns, thresholds: Sequence[float] = LOSS_THRESHOLDS
) -> Dict[str, Optional[float]]:
    """
    Empirical probability of losing more than each threshold.

    A threshold of 0 gives P(R_p < 0) under ``prob_breakeven``; 0.10 gives
    P(R_p < −10%) under ``prob10``.
    """
    clean = clean_distribution(returns)
    if clean.size == 0:
        return {loss_key(t): None for t in thresholds}
    return {loss_key(t): float(np.mean(clean < -t)) for t in thresholds}


def prob_exceeds(values, threshold: float) -> Optional[float]:
    clean = clean_distribution(values)
    if clean.size == 0:
        return None
    return float(np.mean(clean > threshold))


def scenario_contributions(
    asset_returns: np.ndarray,
    weights: np.ndarray,
    portfolio_returns: np.ndarray,
    tickers: Sequence[str],
    cash_contribution: float = 0.0,
    window: float = DEFAULT_SCENARIO_WINDOW,
) -> Dict[str, ScenarioContribution]:
    """
    Break each scenario's portfolio return into per-position contributions.

    Algorithm:
        1. Scenario targets: P5, P25, P50, P75, P95 of R_p (and the mean)
        2. Select the k = max(1, window · n) paths whose R_p is closest
           to the target (all paths for the mean scenario)
        3. c_i = mean over selected paths of w_i r_i

    Averaging a neighbourhood rather than reading one path keeps the split
    stable, and because R_p = Σ w_i r_i + cash on every path the
    contributions plus cash add up exactly to the scenario return.

    Parameters
    ----------
    asset_returns : np.ndarray
        Simulated asset returns (n_paths x N).
    weights : np.ndarray
        Position weights (N,).
    portfolio_returns : np.ndarray
        Portfolio returns of the same paths (n_paths,).
    tickers : sequence of str
        Position labels, in column order.
    cash_contribution : float
        w_cash · r_cash, identical on every path.
    window : float
        Fraction of paths averaged per percentile scenario.

    Returns
    -------
    dict[str, ScenarioContribution]
        Keyed ``p5``, ``p25``, ``p50``, ``p75``, ``p95``, ``mean``.
    """
    n_paths = len(portfolio_returns)
    if n_paths == 0:
        return {}

    weighted = asset_returns * weights
    k = max(1, int(round(window * n_paths)))
    results = {}

    targets = np.percentile(portfolio_returns, SCENARIO_PERCENTILES)
    for level, target in zip(SCENARIO_PERCENTILES, targets):
        distance = np.abs(portfolio_returns - target)
        if k < n_paths:
            idx = np.argpartition(distance, k - 1)[:k]
        else:
            idx = np.arange(n_paths)
        contrib = weighted[idx].mean(axis=0)
        name = percentile_key(level)
        results[name] = ScenarioContribution(
            scenario=name,
            target_return=float(target),
            scenario_return=float(contrib.sum() + cash_contribution),
            contributions=dict(zip(tickers, contrib.tolist())),
            cash=float(cash_contribution),
            paths_used=len(idx),
        )

    contrib = weighted.mean(axis=0)
    results["mean"] = ScenarioContribution(
        scenario="mean",
        target_return=float(np.mean(portfolio_returns)),
        scenario_return=float(contrib.sum() + cash_contribution),
        contributions=dict(zip(tickers, contrib.tolist())),
        cash=float(cash_contribution),
        paths_used=n_paths,
    )
    return results
