"""
Distribution Parameter Module
=============================
Converts between percentile beliefs (P5/P25/P50/P75/P95) and parametric
moments (μ, σ, skew, tail degrees of freedom).

Forward map:
    a   = SKEW_SCALE · skew                       linear skew term
    t   = 1 + (30 − ν) / TAIL_SCALE  if ν < 30    tail-thickening factor
    m   = μ + MEDIAN_SHIFT · a · σ                median
    P25 = m − 0.675 σ             P75 = m + 0.675 σ
    P5  = m − 1.645 σ t (1 − a)   P95 = m + 1.645 σ t (1 + a)

Inverse map:
    σ    = IQR / 1.35
    skew = (right − left) / (right + left) / SKEW_SCALE
    ν    from (P95 − P5) / (3.29 σ), read back through the tail factor
    μ    = P50 − MEDIAN_SHIFT · a · σ

The constants are empirical, not derived from a named estimator, so every
function accepts them as keyword overrides.  The inverse is lossy: ν is
rounded and all outputs are clamped, so round trips drift slightly.
"""

from dataclasses import dataclass
from typing import Dict

import numpy as np

from portfolio_engine.exceptions import ValidationError


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
Z_QUARTILE: float = 0.675
Z_TAIL: float = 1.645
IQR_TO_SIGMA: float = 2 * Z_QUARTILE      # 1.35 = normal IQR / σ

SKEW_SCALE: float = 0.3
MEDIAN_SHIFT: float = 0.2
TAIL_SCALE: float = 50.0

GAUSSIAN_DF: float = 30.0                 # ν at or above this is treated as normal
MIN_TAIL_DF: float = 3.0
MIN_SIGMA: float = 0.01
MAX_ABS_SKEW: float = 1.0

PERCENTILE_KEYS = ("p5", "p25", "p50", "p75", "p95")


@dataclass(frozen=True)
class Percentiles:
    """Return belief expressed as five percentiles (strictly increasing)."""

    p5: float
    p25: float
    p50: float
    p75: float
    p95: float

    def __post_init__(self) -> None:
        values = self.as_array()
        if not np.all(np.isfinite(values)):
            raise ValidationError(f"Percentiles must be finite, got {self.to_dict()}")
        if not np.all(np.diff(values) > 0):
            raise ValidationError(
                f"Percentiles must be strictly increasing, got {self.to_dict()}"
            )

    def as_array(self) -> np.ndarray:
        return np.array([self.p5, self.p25, self.p50, self.p75, self.p95], dtype=float)

    def to_dict(self) -> Dict[str, float]:
        return dict(zip(PERCENTILE_KEYS, (float(v) for v in self.as_array())))


@dataclass(frozen=True)
class DistributionParams:
    """Return belief expressed as moments."""

    mu: float
    sigma: float
    skew: float = 0.0
    tail_df: float = GAUSSIAN_DF

    def __post_init__(self) -> None:
        if not all(np.isfinite([self.mu, self.sigma, self.skew, self.tail_df])):
            raise ValidationError("Distribution parameters must be finite")
        if self.sigma <= 0:
            raise ValidationError(f"sigma must be > 0, got {self.sigma}")
        if self.tail_df < MIN_TAIL_DF:
            raise ValidationError(
                f"tail_df must be >= {MIN_TAIL_DF:g} for finite variance, got {self.tail_df}"
            )
        if abs(self.skew) > MAX_ABS_SKEW:
            raise ValidationError(f"skew must be in [-1, 1], got {self.skew}")

    def to_dict(self) -> Dict[str, float]:
        return {
            "mu": float(self.mu),
            "sigma": float(self.sigma),
            "skew": float(self.skew),
            "tailDf": float(self.tail_df),
        }


def tail_factor(tail_df: float, tail_scale: float = TAIL_SCALE) -> float:
    """Widening applied to the P5/P95 offsets; 1.0 for near-normal tails."""
    if tail_df >= GAUSSIAN_DF:
        return 1.0
    return 1.0 + (GAUSSIAN_DF - tail_df) / tail_scale


def percentiles_from_params(
    mu: float,
    sigma: float,
    skew: float = 0.0,
    tail_df: float = GAUSSIAN_DF,
    skew_scale: float = SKEW_SCALE,
    median_shift: float = MEDIAN_SHIFT,
    tail_scale: float = TAIL_SCALE,
) -> Percentiles:
    """
    Map moments to the five belief percentiles.

    Parameters
    ----------
    mu : float
        Expected return.
    sigma : float
        Volatility.
    skew : float
        Skew in [-1, 1]; positive stretches the right tail.
    tail_df : float
        Tail degrees of freedom; values below 30 widen P5/P95.
    skew_scale, median_shift, tail_scale : float
        Empirical shape constants.

    Returns
    -------
    Percentiles
        P5 < P25 < P50 < P75 < P95.  Inputs are clamped (σ ≥ 0.01,
        skew ∈ [-1, 1], ν ∈ [3, 30]) so this never raises on finite input.
    """
    sigma = max(MIN_SIGMA, float(sigma))
    skew = float(np.clip(skew, -MAX_ABS_SKEW, MAX_ABS_SKEW))
    tail_df = float(np.clip(tail_df, MIN_TAIL_DF, GAUSSIAN_DF))
    a = skew_scale * skew
    t = tail_factor(tail_df, tail_scale)
    median = mu + median_shift * a * sigma

    return Percentiles(
        p5=median - Z_TAIL * sigma * t * (1 - a),
        p25=median - Z_QUARTILE * sigma,
        p50=median,
        p75=median + Z_QUARTILE * sigma,
        p95=median + Z_TAIL * sigma * t * (1 + a),
    )


def params_from_percentiles(
    p5: float,
    p25: float,
    p50: float,
    p75: float,
    p95: float,
    skew_scale: float = SKEW_SCALE,
    median_shift: float = MEDIAN_SHIFT,
    tail_scale: float = TAIL_SCALE,
) -> DistributionParams:
    """
    Approximate inverse of :func:`percentiles_from_params`.

    Every branch is clamped (σ ≥ 0.01, skew ∈ [-1, 1], ν ∈ [3, 30]) so
    this never raises on finite input.
    """
    sigma = max(MIN_SIGMA, (p75 - p25) / IQR_TO_SIGMA)

    right_tail = p95 - p50
    left_tail = p50 - p5
    total_tail = right_tail + left_tail
    asymmetry = (right_tail - left_tail) / total_tail if total_tail > 0 else 0.0
    skew = float(np.clip(asymmetry / skew_scale, -MAX_ABS_SKEW, MAX_ABS_SKEW))

    gaussian_spread = 2 * Z_TAIL * sigma
    spread_ratio = (p95 - p5) / gaussian_spread
    tail_df = GAUSSIAN_DF - tail_scale * (max(1.0, spread_ratio) - 1.0)
    tail_df = float(np.clip(round(tail_df), MIN_TAIL_DF, GAUSSIAN_DF))

    mu = p50 - median_shift * skew_scale * skew * sigma

    return DistributionParams(mu=float(mu), sigma=float(sigma), skew=skew, tail_df=tail_df)


def params_from_percentile_belief(belief: Percentiles, **constants) -> DistributionParams:
    return params_from_percentiles(
        belief.p5, belief.p25, belief.p50, belief.p75, belief.p95, **constants
    )
