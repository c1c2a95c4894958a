"""
Portfolio Input Models
======================
Positions and the immutable request snapshot consumed by one engine run.

    Market value:  V_i = q_i · P_i           (q_i < 0 for shorts)
    NLV:           NLV = Σ V_i + cash
    Weight:        w_i = V_i / NLV           (Σ|w_i| > 1 when levered)
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from portfolio_engine.config import SimulationConfig
from portfolio_engine.distributions import (
    DistributionParams,
    Percentiles,
    params_from_percentile_belief,
)
from portfolio_engine.exceptions import ValidationError


Belief = Union[Percentiles, DistributionParams]

SYMMETRY_TOLERANCE: float = 1e-8


@dataclass(frozen=True)
class Position:
    """One holding plus the user's return belief for it."""

    ticker: str
    quantity: float
    price: float
    belief: Belief

    def __post_init__(self) -> None:
        if not self.ticker or not str(self.ticker).strip():
            raise ValidationError("Position ticker must be non-empty")
        if not np.isfinite(self.quantity):
            raise ValidationError(f"{self.ticker}: quantity must be finite")
        if not np.isfinite(self.price) or self.price <= 0:
            raise ValidationError(f"{self.ticker}: price must be finite and positive")
        if not isinstance(self.belief, (Percentiles, DistributionParams)):
            raise ValidationError(
                f"{self.ticker}: belief must be Percentiles or DistributionParams"
            )
        object.__setattr__(self, "ticker", str(self.ticker).strip().upper())

    @property
    def market_value(self) -> float:
        return float(self.quantity * self.price)

    def distribution_params(self) -> DistributionParams:
        if isinstance(self.belief, DistributionParams):
            return self.belief
        return params_from_percentile_belief(self.belief)


@dataclass(frozen=True, eq=False)
class SimulationRequest:
    """
    Immutable snapshot of everything a run needs.

    The correlation matrix is copied and made read-only so concurrent runs
    can share a request without any of them mutating it.

    Raises
    ------
    ValidationError
        Empty portfolio, duplicate tickers, a correlation matrix that is
        not square / finite / symmetric or does not match the positions,
        or a non-positive net liquidation value.
    """

    positions: Tuple[Position, ...]
    correlation: np.ndarray
    config: SimulationConfig = field(default_factory=SimulationConfig)
    cash: float = 0.0
    cash_rate: float = 0.0

    def __post_init__(self) -> None:
        positions = tuple(self.positions)
        if not positions:
            raise ValidationError("No positions in portfolio")

        tickers = [p.ticker for p in positions]
        if len(set(tickers)) != len(tickers):
            raise ValidationError(f"Duplicate tickers in portfolio: {tickers}")

        try:
            corr = np.array(self.correlation, dtype=float)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Correlation matrix is malformed: {exc}") from exc
        if corr.ndim != 2 or corr.shape[0] != corr.shape[1]:
            raise ValidationError(f"Correlation matrix must be square, got shape {corr.shape}")
        if corr.shape[0] != len(positions):
            raise ValidationError(
                f"Correlation matrix size ({corr.shape[0]}) doesn't match "
                f"positions ({len(positions)})"
            )
        if not np.all(np.isfinite(corr)):
            raise ValidationError("Correlation matrix contains NaN or infinite entries")
        if not np.allclose(corr, corr.T, atol=SYMMETRY_TOLERANCE):
            raise ValidationError("Correlation matrix must be symmetric")
        corr.setflags(write=False)

        if not np.isfinite(self.cash) or not np.isfinite(self.cash_rate):
            raise ValidationError("cash and cash_rate must be finite")

        object.__setattr__(self, "positions", positions)
        object.__setattr__(self, "correlation", corr)

        if self.net_liquidation_value <= 0:
            raise ValidationError("Portfolio value is zero or negative")

    @property
    def tickers(self) -> List[str]:
        return [p.ticker for p in self.positions]

    @property
    def net_liquidation_value(self) -> float:
        return float(sum(p.market_value for p in self.positions) + self.cash)

    @property
    def weights(self) -> np.ndarray:
        values = np.array([p.market_value for p in self.positions], dtype=float)
        return values / self.net_liquidation_value

    @property
    def cash_weight(self) -> float:
        return float(self.cash / self.net_liquidation_value)

    @property
    def cash_contribution(self) -> float:
        return self.cash_weight * self.cash_rate

    def distribution_params(self) -> List[DistributionParams]:
        return [p.distribution_params() for p in self.positions]

    def with_config(self, config: SimulationConfig) -> "SimulationRequest":
        return SimulationRequest(
            positions=self.positions,
            correlation=self.correlation,
            config=config,
            cash=self.cash,
            cash_rate=self.cash_rate,
        )


def equal_weight_positions(
    tickers: Sequence[str],
    beliefs: Sequence[Belief],
    notional: float = 100_000.0,
    price: float = 100.0,
) -> Tuple[Position, ...]:
    """Build an equally weighted book, mostly for demos and tests."""
    if len(tickers) != len(beliefs):
        raise ValidationError("tickers and beliefs must have the same length")
    quantity = notional / len(tickers) / price
    return tuple(
        Position(ticker=t, quantity=quantity, price=price, belief=b)
        for t, b in zip(tickers, beliefs)
    )


def positions_from_weights(
    weights: Dict[str, float],
    beliefs: Dict[str, Belief],
    notional: float = 100_000.0,
    price: float = 100.0,
    tickers: Optional[Sequence[str]] = None,
) -> Tuple[Position, ...]:
    """
    Build positions from target weights of a fully invested book.

    Weights must sum to 1; small floating-point drift (< 1e-4) is
    normalized away with a warning.

    Raises
    ------
    ValidationError
        If a ticker has no weight or no belief, or the weights are far
        from summing to 1.
    """
    if tickers is None:
        tickers = list(weights.keys())

    # reindex aligns by ticker regardless of dict insertion order
    weight_series = pd.Series(weights, dtype=float).reindex(list(tickers))
    if weight_series.isna().any():
        missing = weight_series[weight_series.isna()].index.tolist()
        raise ValidationError(f"No weight defined for tickers: {missing}")

    missing_beliefs = [t for t in tickers if t not in beliefs]
    if missing_beliefs:
        raise ValidationError(f"No belief defined for tickers: {missing_beliefs}")

    values = weight_series.values
    weight_sum = values.sum()
    if not np.isclose(weight_sum, 1.0, rtol=1e-8, atol=1e-8):
        if abs(weight_sum - 1.0) < 1e-4:
            warnings.warn(
                f"Weights sum to {weight_sum:.10f}; auto-normalizing.",
                UserWarning,
                stacklevel=2,
            )
            values = values / weight_sum
        else:
            raise ValidationError(f"Weights must sum to 1.0, got {weight_sum:.6f}")

    return tuple(
        Position(ticker=t, quantity=notional * w / price, price=price, belief=beliefs[t])
        for t, w in zip(tickers, values)
    )
