"""
Portfolio Monte Carlo Engine — Demo Orchestrator
================================================
Runs the complete engine on a sample book and prints a report.

Execution Flow:
    1. Portfolio construction from percentile beliefs
    2. Distribution parameters and covariance shrinkage
    3. Monte Carlo simulation (Student-t, PRNG)
    3b. Monte Carlo simulation (Gaussian copula, Sobol QMC)
    4. Risk attribution, swap analysis and risk parity
    5. Background run with progress reporting
    6. Results export
"""

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from portfolio_engine import (
    FatTailMethod,
    OptimizationConfig,
    Percentiles,
    Position,
    SimulationConfig,
    SimulationRequest,
    TaskScheduler,
    run_optimization,
    run_simulation,
)
from portfolio_engine.covariance import shrink_covariance

# ─────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
RESULTS_DIR = PROJECT_ROOT / "results"

NUM_PATHS = 50_000
RANDOM_SEED = 42
CASH_BALANCE = 25_000.0
CASH_RATE = 0.045

# ticker: (quantity, price, P5, P25, P50, P75, P95 of the 1y return)
SAMPLE_BOOK = {
    "SPY": (200, 560.0, -0.22, -0.02, 0.08, 0.17, 0.32),
    "QQQ": (120, 480.0, -0.32, -0.05, 0.10, 0.22, 0.45),
    "TLT": (300, 92.0, -0.15, -0.04, 0.03, 0.09, 0.20),
    "GLD": (150, 240.0, -0.18, -0.03, 0.06, 0.14, 0.28),
    "NVDA": (80, 130.0, -0.55, -0.12, 0.15, 0.40, 0.95),
}

# Deliberately inconsistent (not PSD) to exercise correlation repair
SAMPLE_CORRELATION = np.array([
    [1.00, 0.92, -0.30, 0.05, 0.75],
    [0.92, 1.00, -0.35, 0.00, 0.85],
    [-0.30, -0.35, 1.00, 0.30, 0.60],
    [0.05, 0.00, 0.30, 1.00, 0.00],
    [0.75, 0.85, 0.60, 0.00, 1.00],
])


def print_header(text: str) -> None:
    """Print formatted section header."""
    width = 60
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width)


def print_metrics(metrics: dict, indent: int = 4) -> None:
    """Print dictionary of metrics with formatting."""
    prefix = " " * indent
    for key, val in metrics.items():
        if isinstance(val, float):
            print(f"{prefix}{key:.<35} {val:>12.6f}")
        else:
            print(f"{prefix}{key:.<35} {str(val):>12}")


def build_request(config: SimulationConfig) -> SimulationRequest:
    positions = tuple(
        Position(
            ticker=ticker,
            quantity=quantity,
            price=price,
            belief=Percentiles(p5, p25, p50, p75, p95),
        )
        for ticker, (quantity, price, p5, p25, p50, p75, p95) in SAMPLE_BOOK.items()
    )
    return SimulationRequest(
        positions=positions,
        correlation=SAMPLE_CORRELATION,
        config=config,
        cash=CASH_BALANCE,
        cash_rate=CASH_RATE,
    )


def main() -> None:
    """Execute the complete engine pipeline on the sample book."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    print("\n" + "╔" + "═" * 58 + "╗")
    print("║   PORTFOLIO MONTE CARLO & OPTIMIZATION ENGINE            ║")
    print("║   One-Period Outcome Model                               ║")
    print("╚" + "═" * 58 + "╝")

    # ── PHASE 1: Portfolio ─────────────────────────────────────
    print_header("PHASE 1 — PORTFOLIO CONSTRUCTION")

    config = SimulationConfig(num_paths=NUM_PATHS, seed=RANDOM_SEED)
    request = build_request(config)

    print(f"\n  Positions:     {request.tickers}")
    print(f"  NLV:           {request.net_liquidation_value:,.2f}")
    print(f"  Cash weight:   {request.cash_weight:.4f}")
    weights_df = pd.DataFrame(
        {"weight": request.weights}, index=request.tickers
    )
    print(weights_df.to_string(float_format=lambda x: f"{x:.4f}"))

    # ── PHASE 2: Parameters & Covariance ───────────────────────
    print_header("PHASE 2 — DISTRIBUTION PARAMETERS & COVARIANCE")

    params = request.distribution_params()
    params_df = pd.DataFrame(
        [p.to_dict() for p in params], index=request.tickers
    )
    print("\n  Fitted Parameters:")
    print(params_df.to_string(float_format=lambda x: f"{x:.4f}"))

    shrinkage = shrink_covariance(
        params_df["sigma"].values,
        request.correlation,
        n_observations=config.shrinkage_observations,
    )
    print("\n  Shrinkage:")
    print_metrics({
        "intensity": shrinkage.intensity,
        "average_correlation": shrinkage.average_correlation,
        "correlation_repaired": shrinkage.repaired,
    })
    print("\n  Effective Correlation Matrix:")
    corr_df = pd.DataFrame(
        shrinkage.correlation, index=request.tickers, columns=request.tickers
    )
    print(corr_df.to_string(float_format=lambda x: f"{x:.3f}"))

    # ── PHASE 3: Monte Carlo ───────────────────────────────────
    print_header("PHASE 3 — MONTE CARLO SIMULATION (STUDENT-t)")

    print(f"    Running {NUM_PATHS:,} paths...")
    sim = run_simulation(request)

    print("\n  ┌─ Terminal Return Percentiles ────────────────┐")
    print(sim.percentiles_frame().to_string(float_format=lambda x: f"{x:,.4f}"))
    print("\n  ┌─ Loss Probabilities ─────────────────────────┐")
    print_metrics(sim.prob_loss)
    print("\n  ┌─ Tail Risk (return space) ───────────────────┐")
    print_metrics({**sim.tail_risk, **sim.parametric_risk})
    print("\n  ┌─ Drawdown ───────────────────────────────────┐")
    print_metrics({
        "median_max_drawdown": sim.drawdown.median,
        "p95_max_drawdown": sim.drawdown.percentiles.get("p95"),
        f"P(drawdown > {sim.drawdown_threshold:.0%})": sim.prob_drawdown_exceeds,
    })
    print("\n  ┌─ Scenario Contributions ─────────────────────┐")
    print(sim.contributions_frame().to_string(float_format=lambda x: f"{x:.4f}"))

    # ── PHASE 3b: Gaussian copula + QMC ────────────────────────
    print_header("PHASE 3b — GAUSSIAN COPULA WITH SOBOL QMC")

    qmc_request = request.with_config(
        SimulationConfig(
            num_paths=NUM_PATHS,
            seed=RANDOM_SEED,
            fat_tail_method=FatTailMethod.GAUSSIAN_COPULA,
            use_qmc=True,
        )
    )
    sim_qmc = run_simulation(qmc_request)
    comparison = pd.DataFrame({
        "Model": ["Student-t (PRNG)", "Gaussian copula (QMC)"],
        "P5": [sim.terminal.percentiles["p5"], sim_qmc.terminal.percentiles["p5"]],
        "P50": [sim.terminal.percentiles["p50"], sim_qmc.terminal.percentiles["p50"]],
        "P95": [sim.terminal.percentiles["p95"], sim_qmc.terminal.percentiles["p95"]],
        "VaR 5%": [sim.tail_risk["var5"], sim_qmc.tail_risk["var5"]],
        "CVaR 5%": [sim.tail_risk["cvar5"], sim_qmc.tail_risk["cvar5"]],
    })
    print("\n" + comparison.to_string(index=False, float_format=lambda x: f"{x:.6f}"))

    # ── PHASE 4: Optimization ──────────────────────────────────
    print_header("PHASE 4 — RISK ATTRIBUTION & OPTIMIZATION")

    opt_config = OptimizationConfig(num_paths=20_000, top_k=10)
    opt = run_optimization(request, opt_config)

    print("\n  Current Portfolio:")
    print_metrics({
        "expected_return": opt.current.portfolio_return,
        "volatility": opt.current.portfolio_vol,
        "sharpe": opt.current.sharpe,
        "mc_sharpe": opt.current.mc_results.sharpe,
    })
    print("\n  ┌─ Position Attribution ───────────────────────┐")
    print(opt.positions_frame().to_string(float_format=lambda x: f"{x:.4f}"))
    print("\n  ┌─ Top Swaps (MC validated) ───────────────────┐")
    print(opt.swaps_frame().head(5).to_string(index=False, float_format=lambda x: f"{x:.5f}"))
    print("\n  ┌─ Risk Parity ────────────────────────────────┐")
    rp = opt.risk_parity
    print_metrics({
        "sharpe": rp.sharpe,
        "delta_sharpe": rp.delta_sharpe,
        "converged": rp.converged,
        "iterations": rp.iterations,
        "diversification_ratio": rp.diversification_ratio,
    })

    # ── PHASE 5: Background run ────────────────────────────────
    print_header("PHASE 5 — BACKGROUND RUN WITH PROGRESS")

    with TaskScheduler(max_workers=2) as scheduler:
        task = scheduler.submit_simulation(request)
        outcome = task.result(timeout=300)
        events = task.progress.drain()
    print(f"  Status:          {outcome.status.value}")
    print(f"  Progress events: {len(events)} (dropped {task.progress.dropped})")
    if events:
        last = events[-1]
        print(f"  Last event:      {last.phase} {last.current}/{last.total}")

    # ── Save all results as JSON ───────────────────────────────
    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    all_results = {
        "simulation": sim.to_dict(),
        "simulation_qmc": sim_qmc.to_dict(),
        "optimization": opt.to_dict(),
        "config": {
            "simulation": config.to_dict(),
            "optimization": opt_config.to_dict(),
        },
    }
    results_path = RESULTS_DIR / "engine_results.json"
    with open(results_path, "w") as f:
        json.dump(all_results, f, indent=2)

    print(f"\n  Results saved to: {results_path}")

    print("\n" + "╔" + "═" * 58 + "╗")
    print("║   ENGINE EXECUTION COMPLETE                              ║")
    print("╚" + "═" * 58 + "╝\n")


if __name__ == "__main__":
    main()
