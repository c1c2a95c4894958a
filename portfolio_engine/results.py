"""
Engine Results
==============
Immutable, tagged and versioned result records.

Every record carries ``kind`` and ``schema_version`` so that a consumer can
tell a simulation result from an optimization result and detect format
changes.  ``to_dict()`` produces plain JSON types (lists, floats, None);
the ``*_frame()`` helpers give pandas views for reporting.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from portfolio_engine.exceptions import ValidationError
from portfolio_engine.optimization import MonteCarloStats, SwapMatrix, ValidatedSwap
from portfolio_engine.statistics import (
    SCENARIO_PERCENTILES,
    DistributionSummary,
    Histogram,
    ScenarioContribution,
    percentile_key,
)


SCHEMA_VERSION: int = 1
SIMULATION_KIND: str = "simulation"
OPTIMIZATION_KIND: str = "optimization"
CONTRIBUTION_SCENARIOS = tuple(percentile_key(q) for q in SCENARIO_PERCENTILES) + ("mean",)


def _json_float(value):
    if value is None:
        return None
    value = float(value)
    return value if np.isfinite(value) else None


def _check_probability(name: str, value: Optional[float]) -> None:
    if value is not None and not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be None or in [0, 1], got {value}")


def _check_tickers(name: str, keys, tickers: List[str]) -> None:
    if list(keys) != list(tickers):
        raise ValidationError(
            f"{name} tickers {list(keys)} don't match positions {list(tickers)}"
        )


@dataclass(frozen=True)
class SimulationMetadata:
    tickers: Tuple[str, ...]
    num_paths: int
    fat_tail_method: str
    use_qmc: bool
    seed: int
    shared_tail_df: float
    shrinkage_intensity: float
    correlation_repaired: bool
    starting_value: float
    elapsed_seconds: float

    def to_dict(self) -> dict:
        return {
            "tickers": list(self.tickers),
            "numPaths": self.num_paths,
            "fatTailMethod": self.fat_tail_method,
            "useQmc": self.use_qmc,
            "seed": self.seed,
            "sharedTailDf": self.shared_tail_df,
            "shrinkageIntensity": self.shrinkage_intensity,
            "correlationRepaired": self.correlation_repaired,
            "startingValue": self.starting_value,
            "elapsedSeconds": self.elapsed_seconds,
        }


@dataclass(frozen=True)
class SimulationResult:
    """
    Outcome of one Monte Carlo run.

    Attributes
    ----------
    terminal : DistributionSummary
        Terminal portfolio returns.
    terminal_histogram : Histogram or None
        Linear-bin histogram of terminal returns.
    terminal_dollars : DistributionSummary
        Terminal portfolio value, V_0 (1 + R_p).
    drawdown : DistributionSummary
        Maximum drawdown per path.
    prob_drawdown_exceeds : float or None
        P(max drawdown > drawdown_threshold).
    prob_loss : dict
        ``prob_breakeven``, ``prob5``, ``prob10``, ``prob20``, ``prob30``.
    tail_risk : dict
        Empirical ``var5``/``cvar5``/``var10``/``cvar10`` in return space.
    parametric_risk : dict
        Gaussian VaR/ES from the simulated mean and volatility.
    contributions : dict[str, ScenarioContribution]
        Per-position attribution of the p5..p95 and mean scenarios.
    """

    terminal: DistributionSummary
    terminal_histogram: Optional[Histogram]
    terminal_dollars: DistributionSummary
    drawdown: DistributionSummary
    drawdown_threshold: float
    prob_drawdown_exceeds: Optional[float]
    prob_loss: Dict[str, Optional[float]]
    tail_risk: Dict[str, Optional[float]]
    parametric_risk: Dict[str, Optional[float]]
    contributions: Dict[str, ScenarioContribution]
    metadata: SimulationMetadata
    kind: str = field(default=SIMULATION_KIND, init=False)
    schema_version: int = field(default=SCHEMA_VERSION, init=False)

    def __post_init__(self) -> None:
        if set(self.contributions) != set(CONTRIBUTION_SCENARIOS):
            raise ValidationError(
                f"contributions must cover {list(CONTRIBUTION_SCENARIOS)}, "
                f"got {list(self.contributions)}"
            )
        for scenario in self.contributions.values():
            _check_tickers(
                f"Scenario {scenario.scenario}",
                scenario.contributions.keys(),
                self.metadata.tickers,
            )
        for key, value in self.prob_loss.items():
            _check_probability(key, value)
        _check_probability("prob_drawdown_exceeds", self.prob_drawdown_exceeds)
        if not 0.0 < self.drawdown_threshold < 1.0:
            raise ValidationError(
                f"drawdown_threshold must be in (0, 1), got {self.drawdown_threshold}"
            )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "schemaVersion": self.schema_version,
            "terminal": self.terminal.to_dict(),
            "terminalHistogram": (
                self.terminal_histogram.to_dict() if self.terminal_histogram else None
            ),
            "terminalDollars": self.terminal_dollars.to_dict(),
            "drawdown": {
                **self.drawdown.to_dict(),
                "threshold": self.drawdown_threshold,
                "probExceedsThreshold": self.prob_drawdown_exceeds,
            },
            "probLoss": {
                ("probBreakeven" if k == "prob_breakeven" else k): v
                for k, v in self.prob_loss.items()
            },
            "tailRisk": {k: _json_float(v) for k, v in self.tail_risk.items()},
            "parametricRisk": {k: _json_float(v) for k, v in self.parametric_risk.items()},
            "contributions": {k: c.to_dict() for k, c in self.contributions.items()},
            "metadata": self.metadata.to_dict(),
        }

    def percentiles_frame(self) -> pd.DataFrame:
        """Terminal return and dollar percentiles side by side."""
        return pd.DataFrame(
            {
                "return": pd.Series(self.terminal.percentiles),
                "dollars": pd.Series(self.terminal_dollars.percentiles),
            }
        )

    def contributions_frame(self) -> pd.DataFrame:
        """Positions (plus cash) by scenario."""
        columns = {}
        for name, scenario in self.contributions.items():
            columns[name] = pd.Series({**scenario.contributions, "CASH": scenario.cash})
        frame = pd.DataFrame(columns)
        frame.loc["TOTAL"] = frame.sum()
        return frame


@dataclass(frozen=True)
class CurrentPortfolio:
    portfolio_return: float
    portfolio_vol: float
    sharpe: float
    mc_results: Optional[MonteCarloStats]

    def to_dict(self) -> dict:
        return {
            "portfolioReturn": self.portfolio_return,
            "portfolioVol": self.portfolio_vol,
            "sharpe": self.sharpe,
            "mcResults": self.mc_results.to_dict() if self.mc_results else None,
        }


@dataclass(frozen=True)
class PositionAttribution:
    ticker: str
    weight: float
    mu: float
    sigma: float
    mctr: float
    risk_contribution: float
    isharpe: float
    asset_sharpe: float
    optimality_ratio: float

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "weight": self.weight,
            "mu": self.mu,
            "sigma": self.sigma,
            "mctr": self.mctr,
            "riskContribution": self.risk_contribution,
            "iSharpe": self.isharpe,
            "assetSharpe": self.asset_sharpe,
            "optimalityRatio": self.optimality_ratio,
        }


@dataclass(frozen=True)
class RiskParityResult:
    weights: Dict[str, float]
    portfolio_return: float
    portfolio_vol: float
    sharpe: float
    delta_sharpe: float
    weight_changes: Dict[str, float]
    converged: bool
    iterations: int
    max_deviation: float
    diversification_ratio: float

    def to_dict(self) -> dict:
        return {
            "weights": dict(self.weights),
            "portfolioReturn": self.portfolio_return,
            "portfolioVol": self.portfolio_vol,
            "sharpe": self.sharpe,
            "deltaSharpe": self.delta_sharpe,
            "weightChanges": dict(self.weight_changes),
            "converged": self.converged,
            "iterations": self.iterations,
            "maxDeviation": self.max_deviation,
            "diversificationRatio": self.diversification_ratio,
        }


@dataclass(frozen=True)
class OptimizationMetadata:
    paths_per_scenario: int
    use_qmc: bool
    risk_free_rate: float
    swap_size: float
    gross_exposure: float
    cash_weight: float
    shrinkage_intensity: float
    elapsed_seconds: float

    def to_dict(self) -> dict:
        return {
            "pathsPerScenario": self.paths_per_scenario,
            "useQmc": self.use_qmc,
            "riskFreeRate": self.risk_free_rate,
            "swapSize": self.swap_size,
            "grossExposure": self.gross_exposure,
            "cashWeight": self.cash_weight,
            "shrinkageIntensity": self.shrinkage_intensity,
            "elapsedSeconds": self.elapsed_seconds,
        }


@dataclass(frozen=True)
class OptimizationResult:
    """
    Risk attribution, ranked swaps and risk-parity target of one book.

    ``top_swaps`` is sorted by the Monte Carlo Sharpe change (analytic
    ranking picks the candidates, simulation orders them).
    """

    current: CurrentPortfolio
    positions: Tuple[PositionAttribution, ...]
    top_swaps: Tuple[ValidatedSwap, ...]
    swap_matrix: SwapMatrix
    risk_parity: RiskParityResult
    metadata: OptimizationMetadata
    kind: str = field(default=OPTIMIZATION_KIND, init=False)
    schema_version: int = field(default=SCHEMA_VERSION, init=False)

    def __post_init__(self) -> None:
        tickers = [p.ticker for p in self.positions]
        n = len(tickers)
        _check_tickers("Swap matrix", self.swap_matrix.tickers, tickers)
        for name in ("delta_sharpe", "delta_vol", "delta_return"):
            shape = np.shape(getattr(self.swap_matrix, name))
            if shape != (n, n):
                raise ValidationError(f"Swap matrix {name} must be {n}x{n}, got {shape}")
        _check_tickers("Risk parity weights", self.risk_parity.weights.keys(), tickers)
        _check_tickers(
            "Risk parity weight changes", self.risk_parity.weight_changes.keys(), tickers
        )
        for swap in self.top_swaps:
            c = swap.candidate
            if c.sell_ticker not in tickers or c.buy_ticker not in tickers:
                raise ValidationError(
                    f"Swap {c.sell_ticker}→{c.buy_ticker} references unknown positions"
                )

    def analyze_swap(self, sell_ticker: str, buy_ticker: str) -> Dict[str, float]:
        """Analytic deltas of one cell of the swap matrix."""
        tickers: List[str] = self.swap_matrix.tickers
        try:
            i = tickers.index(sell_ticker.upper())
            j = tickers.index(buy_ticker.upper())
        except ValueError:
            raise KeyError(f"Unknown ticker in swap {sell_ticker}→{buy_ticker}") from None
        return {
            "delta_sharpe": float(self.swap_matrix.delta_sharpe[i, j]),
            "delta_vol": float(self.swap_matrix.delta_vol[i, j]),
            "delta_return": float(self.swap_matrix.delta_return[i, j]),
        }

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "schemaVersion": self.schema_version,
            "current": self.current.to_dict(),
            "positions": [p.to_dict() for p in self.positions],
            "topSwaps": [s.to_dict() for s in self.top_swaps],
            "swapMatrix": self.swap_matrix.to_dict(),
            "riskParity": self.risk_parity.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    def positions_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([p.to_dict() for p in self.positions])
        return frame.set_index("ticker")

    def swaps_frame(self) -> pd.DataFrame:
        rows = []
        for swap in self.top_swaps:
            c = swap.candidate
            rows.append(
                {
                    "sell": c.sell_ticker,
                    "buy": c.buy_ticker,
                    "delta_sharpe": c.delta_sharpe,
                    "delta_vol": c.delta_vol,
                    "delta_return": c.delta_return,
                    **swap.delta_metrics,
                }
            )
        return pd.DataFrame(rows)
