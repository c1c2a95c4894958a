"""
Engine Configuration
====================
Module-level defaults and the immutable per-run configuration objects.

Every run receives a frozen SimulationConfig (and, for optimization, an
OptimizationConfig).  Values are validated once at construction so the
numerical code never has to re-check them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from portfolio_engine.exceptions import ValidationError


# ─────────────────────────────────────────────────────────────
# Simulation defaults
# ─────────────────────────────────────────────────────────────
DEFAULT_NUM_PATHS: int = 10_000
DEFAULT_SEED: int = 42
DEFAULT_BATCH_SIZE: int = 10_000
DEFAULT_HISTOGRAM_BINS: int = 50
DEFAULT_DRAWDOWN_THRESHOLD: float = 0.20
DEFAULT_DRAWDOWN_STEPS: int = 12          # monthly checkpoints over a 1y horizon
DEFAULT_SCENARIO_WINDOW: float = 0.005    # 0.5% of paths averaged per scenario
TRADING_DAYS_PER_YEAR: int = 252

MIN_PATHS: int = 100
MAX_PATHS: int = 1_000_000

# ─────────────────────────────────────────────────────────────
# Optimization defaults
# ─────────────────────────────────────────────────────────────
DEFAULT_RISK_FREE_RATE: float = 0.04
DEFAULT_SWAP_SIZE: float = 0.01           # 1% of NLV
DEFAULT_TOP_K: int = 15
DEFAULT_ISHARPE_STEP: float = 0.01
DEFAULT_RISK_PARITY_TOLERANCE: float = 1e-6
DEFAULT_RISK_PARITY_MAX_ITER: int = 500
DEFAULT_MAX_WORKERS: int = 4

# Statistics reported on every run
TERMINAL_PERCENTILES = (5, 10, 25, 50, 75, 90, 95)
DRAWDOWN_PERCENTILES = (50, 75, 90, 95, 99)
LOSS_THRESHOLDS = (0.0, 0.05, 0.10, 0.20, 0.30)
VAR_LEVELS = (0.05, 0.10)


class FatTailMethod(str, Enum):
    """How fat tails are injected into the correlated draws."""

    STUDENT_T = "studentT"
    GAUSSIAN_COPULA = "gaussianCopula"


@dataclass(frozen=True)
class SimulationConfig:
    """
    Immutable configuration of one Monte Carlo run.

    Attributes
    ----------
    num_paths : int
        Number of simulated one-period paths.
    fat_tail_method : FatTailMethod
        ``studentT`` (shared chi-squared scaling, correlation preserved) or
        ``gaussianCopula`` (per-marginal Student-t quantiles).
    use_qmc : bool
        Draw uniforms from a scrambled Sobol sequence instead of the PRNG.
    drawdown_threshold : float
        Drawdown level whose exceedance probability is reported.
    seed : int
        Seed for every random source of the run.
    tail_df : float, optional
        Shared degrees of freedom for ``studentT``.  ``None`` uses the
        smallest tail_df among the positions.
    batch_size : int
        Paths per batch; progress and cancellation are checked per batch.
    histogram_bins : int
        Number of linear histogram bins.
    drawdown_steps : int
        Sub-periods used to trace the running peak of each path.
    scenario_window : float
        Fraction of paths averaged around each contribution scenario.
    shrinkage_observations : int
        Sample length assumed when sizing the Ledoit-Wolf intensity.
    """

    num_paths: int = DEFAULT_NUM_PATHS
    fat_tail_method: FatTailMethod = FatTailMethod.STUDENT_T
    use_qmc: bool = False
    drawdown_threshold: float = DEFAULT_DRAWDOWN_THRESHOLD
    seed: int = DEFAULT_SEED
    tail_df: Optional[float] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    histogram_bins: int = DEFAULT_HISTOGRAM_BINS
    drawdown_steps: int = DEFAULT_DRAWDOWN_STEPS
    scenario_window: float = DEFAULT_SCENARIO_WINDOW
    shrinkage_observations: int = TRADING_DAYS_PER_YEAR

    def __post_init__(self) -> None:
        # Accept the plain string spelling ("studentT") as well as the enum
        if not isinstance(self.fat_tail_method, FatTailMethod):
            try:
                object.__setattr__(
                    self, "fat_tail_method", FatTailMethod(self.fat_tail_method)
                )
            except ValueError:
                raise ValidationError(
                    f"Unknown fat_tail_method: {self.fat_tail_method!r}"
                ) from None

        if not MIN_PATHS <= self.num_paths <= MAX_PATHS:
            raise ValidationError(
                f"num_paths must be in [{MIN_PATHS}, {MAX_PATHS}], got {self.num_paths}"
            )
        if not 0.0 < self.drawdown_threshold < 1.0:
            raise ValidationError(
                f"drawdown_threshold must be in (0, 1), got {self.drawdown_threshold}"
            )
        if self.tail_df is not None and self.tail_df < 3:
            raise ValidationError(f"tail_df must be >= 3, got {self.tail_df}")
        if self.batch_size < 1:
            raise ValidationError("batch_size must be positive")
        if self.histogram_bins < 1:
            raise ValidationError("histogram_bins must be positive")
        if self.drawdown_steps < 1:
            raise ValidationError("drawdown_steps must be positive")
        if not 0.0 < self.scenario_window <= 1.0:
            raise ValidationError("scenario_window must be in (0, 1]")
        if self.shrinkage_observations < 2:
            raise ValidationError("shrinkage_observations must be >= 2")

    def to_dict(self) -> dict:
        return {
            "numPaths": self.num_paths,
            "fatTailMethod": self.fat_tail_method.value,
            "useQmc": self.use_qmc,
            "drawdownThreshold": self.drawdown_threshold,
            "seed": self.seed,
            "tailDf": self.tail_df,
            "batchSize": self.batch_size,
            "histogramBins": self.histogram_bins,
            "drawdownSteps": self.drawdown_steps,
            "scenarioWindow": self.scenario_window,
            "shrinkageObservations": self.shrinkage_observations,
        }


@dataclass(frozen=True)
class OptimizationConfig:
    """Immutable configuration of one optimization run."""

    risk_free_rate: float = DEFAULT_RISK_FREE_RATE
    swap_size: float = DEFAULT_SWAP_SIZE
    top_k: int = DEFAULT_TOP_K
    num_paths: Optional[int] = None
    isharpe_step: float = DEFAULT_ISHARPE_STEP
    risk_parity_tolerance: float = DEFAULT_RISK_PARITY_TOLERANCE
    risk_parity_max_iter: int = DEFAULT_RISK_PARITY_MAX_ITER
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        if not 0.0 < self.swap_size <= 0.5:
            raise ValidationError(f"swap_size must be in (0, 0.5], got {self.swap_size}")
        if self.top_k < 0:
            raise ValidationError("top_k must be non-negative")
        if self.num_paths is not None and not MIN_PATHS <= self.num_paths <= MAX_PATHS:
            raise ValidationError(
                f"num_paths must be in [{MIN_PATHS}, {MAX_PATHS}], got {self.num_paths}"
            )
        if self.isharpe_step <= 0:
            raise ValidationError("isharpe_step must be positive")
        if self.risk_parity_tolerance <= 0:
            raise ValidationError("risk_parity_tolerance must be positive")
        if self.risk_parity_max_iter < 1:
            raise ValidationError("risk_parity_max_iter must be positive")
        if self.max_workers < 1:
            raise ValidationError("max_workers must be positive")

    def to_dict(self) -> dict:
        return {
            "riskFreeRate": self.risk_free_rate,
            "swapSize": self.swap_size,
            "topK": self.top_k,
            "numPaths": self.num_paths,
            "iSharpeStep": self.isharpe_step,
            "riskParityTolerance": self.risk_parity_tolerance,
            "riskParityMaxIter": self.risk_parity_max_iter,
            "maxWorkers": self.max_workers,
        }
