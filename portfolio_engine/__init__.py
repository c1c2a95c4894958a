"""
Portfolio Monte Carlo & Optimization Engine
===========================================
One-period portfolio outcome model implementing:
- Percentile beliefs ↔ (μ, σ, skew, ν) distribution parameters
- Correlation repair and Ledoit-Wolf covariance shrinkage
- Correlated Student-t / Gaussian-copula sampling (PRNG or Sobol QMC)
- Cornish-Fisher skew, running-peak drawdowns, scenario contributions
- VaR / CVaR and loss probabilities
- MCTR, risk contribution, incremental Sharpe and swap analysis
- Monte Carlo swap validation and risk-parity weights
- Cancellable background runs with progress reporting
"""

from portfolio_engine.config import FatTailMethod, OptimizationConfig, SimulationConfig
from portfolio_engine.distributions import (
    DistributionParams,
    Percentiles,
    params_from_percentiles,
    percentiles_from_params,
)
from portfolio_engine.engine import run_optimization, run_simulation
from portfolio_engine.exceptions import (
    DecompositionError,
    EngineError,
    SimulationCancelled,
    ValidationError,
)
from portfolio_engine.models import Position, SimulationRequest
from portfolio_engine.results import OptimizationResult, SimulationResult
from portfolio_engine.tasks import (
    CancellationToken,
    ProgressChannel,
    TaskScheduler,
    TaskStatus,
)

__version__ = "1.0.0"

__all__ = [
    "CancellationToken",
    "DecompositionError",
    "DistributionParams",
    "EngineError",
    "FatTailMethod",
    "OptimizationConfig",
    "OptimizationResult",
    "Percentiles",
    "Position",
    "ProgressChannel",
    "SimulationCancelled",
    "SimulationConfig",
    "SimulationRequest",
    "SimulationResult",
    "TaskScheduler",
    "TaskStatus",
    "ValidationError",
    "params_from_percentiles",
    "percentiles_from_params",
    "run_optimization",
    "run_simulation",
]
