"""
Engine Pipelines
================
End-to-end simulation and optimization runs over an immutable request.

Execution Flow (simulation):
    1. Resolve beliefs to (μ, σ, skew, ν)
    2. Repair correlation, build Σ and shrink it (Ledoit-Wolf)
    3. Sample correlated, fat-tailed asset returns in batches
    4. Aggregate paths: portfolio return, dollars, drawdown
    5. Statistics, tail risk and scenario contributions

Execution Flow (optimization):
    1. Steps 1-2 above
    2. Risk decomposition (MCTR, %Risk, iSharpe, optimality ratio)
    3. Closed-form swap matrix and analytic top-K
    4. Monte Carlo validation of baseline + top-K on common draws
    5. Risk-parity target weights

Both functions are pure apart from logging: they hold no shared state,
report progress through ``progress(current, total, phase)`` and poll the
cancellation token between batches and phases.
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Optional

import numpy as np

from portfolio_engine.config import (
    DRAWDOWN_PERCENTILES,
    LOSS_THRESHOLDS,
    TERMINAL_PERCENTILES,
    VAR_LEVELS,
    OptimizationConfig,
)
from portfolio_engine.covariance import ShrinkageResult, shrink_covariance
from portfolio_engine.models import SimulationRequest
from portfolio_engine.optimization import (
    compute_asset_sharpe,
    compute_incremental_sharpe,
    compute_mctr,
    compute_optimality_ratio,
    compute_risk_contribution,
    compute_swap_matrix,
    diversification_ratio,
    portfolio_return,
    portfolio_volatility,
    rank_swaps,
    sharpe_ratio,
    solve_risk_parity,
    validate_swaps,
)
from portfolio_engine.paths import aggregate_paths
from portfolio_engine.results import (
    CurrentPortfolio,
    OptimizationMetadata,
    OptimizationResult,
    PositionAttribution,
    RiskParityResult,
    SimulationMetadata,
    SimulationResult,
)
from portfolio_engine.risk_metrics import parametric_es, parametric_var, tail_risk_metrics
from portfolio_engine.sampler import CorrelatedSampler, check_cancelled
from portfolio_engine.statistics import (
    compute_histogram,
    prob_exceeds,
    prob_loss,
    scenario_contributions,
    summarize_distribution,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


def _report(progress: Optional[ProgressCallback], current: int, total: int, phase: str) -> None:
    if progress is not None:
        progress(current, total, phase)


def estimate_covariance(request: SimulationRequest) -> ShrinkageResult:
    """Shrunk covariance of the request's marginals and correlation."""
    sigmas = np.array([p.sigma for p in request.distribution_params()])
    return shrink_covariance(
        sigmas,
        request.correlation,
        n_observations=request.config.shrinkage_observations,
    )


def run_simulation(
    request: SimulationRequest,
    progress: Optional[ProgressCallback] = None,
    cancel_token=None,
) -> SimulationResult:
    """
    Full Monte Carlo simulation of one portfolio snapshot.

    Parameters
    ----------
    request : SimulationRequest
        Positions, correlation matrix, configuration and cash.
    progress : callable, optional
        ``progress(current, total, phase)``; phases are ``estimating``,
        ``sampling``, ``aggregating`` and ``statistics``.
    cancel_token : CancellationToken, optional
        Checked between batches and phases.

    Returns
    -------
    SimulationResult

    Raises
    ------
    SimulationCancelled
        If the token is set before the run completes.
    DecompositionError
        If Σ cannot be factorized even after regularization.
    """
    start = time.perf_counter()
    config = request.config
    logger.info(
        "Simulation started: %d positions, %d paths, method=%s, qmc=%s",
        len(request.positions),
        config.num_paths,
        config.fat_tail_method.value,
        config.use_qmc,
    )

    _report(progress, 0, 1, "estimating")
    params = request.distribution_params()
    shrinkage = estimate_covariance(request)
    _report(progress, 1, 1, "estimating")
    check_cancelled(cancel_token, "estimation")

    sampler = CorrelatedSampler(params, shrinkage.covariance, config)
    asset_returns = sampler.sample(config.num_paths, cancel_token, progress)

    check_cancelled(cancel_token, "aggregation")
    _report(progress, 0, 1, "aggregating")
    weights = request.weights
    nlv = request.net_liquidation_value
    ensemble = aggregate_paths(
        asset_returns,
        weights,
        starting_value=nlv,
        cash_weight=request.cash_weight,
        cash_rate=request.cash_rate,
        n_steps=config.drawdown_steps,
        seed=config.seed + 1,
    )
    _report(progress, 1, 1, "aggregating")

    check_cancelled(cancel_token, "statistics")
    _report(progress, 0, 1, "statistics")
    terminal = summarize_distribution(ensemble.terminal_returns, TERMINAL_PERCENTILES)

    parametric = {}
    if terminal.available:
        for level in VAR_LEVELS:
            label = f"{round(level * 100):d}"
            parametric[f"var{label}"] = parametric_var(terminal.mean, terminal.std, level)
            parametric[f"es{label}"] = parametric_es(terminal.mean, terminal.std, level)

    result = SimulationResult(
        terminal=terminal,
        terminal_histogram=compute_histogram(ensemble.terminal_returns, config.histogram_bins),
        terminal_dollars=summarize_distribution(ensemble.terminal_dollars, TERMINAL_PERCENTILES),
        drawdown=summarize_distribution(ensemble.max_drawdowns, DRAWDOWN_PERCENTILES),
        drawdown_threshold=config.drawdown_threshold,
        prob_drawdown_exceeds=prob_exceeds(ensemble.max_drawdowns, config.drawdown_threshold),
        prob_loss=prob_loss(ensemble.terminal_returns, LOSS_THRESHOLDS),
        tail_risk=tail_risk_metrics(ensemble.terminal_returns, VAR_LEVELS),
        parametric_risk=parametric,
        contributions=scenario_contributions(
            asset_returns,
            weights,
            ensemble.terminal_returns,
            request.tickers,
            request.cash_contribution,
            config.scenario_window,
        ),
        metadata=SimulationMetadata(
            tickers=tuple(request.tickers),
            num_paths=config.num_paths,
            fat_tail_method=config.fat_tail_method.value,
            use_qmc=config.use_qmc,
            seed=config.seed,
            shared_tail_df=sampler.shared_df,
            shrinkage_intensity=shrinkage.intensity,
            correlation_repaired=shrinkage.repaired,
            starting_value=nlv,
            elapsed_seconds=time.perf_counter() - start,
        ),
    )
    _report(progress, 1, 1, "statistics")

    logger.info(
        "Simulation finished in %.2fs (median %.4f, P(loss) %.3f)",
        result.metadata.elapsed_seconds,
        terminal.median if terminal.available else float("nan"),
        result.prob_loss.get("prob_breakeven") or 0.0,
    )
    return result


def run_optimization(
    request: SimulationRequest,
    opt_config: Optional[OptimizationConfig] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_token=None,
) -> OptimizationResult:
    """
    Risk attribution, swap ranking with Monte Carlo validation, and risk
    parity for one portfolio snapshot.

    Parameters
    ----------
    request : SimulationRequest
        Positions, correlation matrix, simulation configuration and cash.
    opt_config : OptimizationConfig, optional
        Risk-free rate, swap size, top-K, validation paths, solver limits.
    progress : callable, optional
        ``progress(current, total, phase)``; phases are ``attribution``,
        ``swaps``, ``sampling``, ``validating`` and ``risk_parity``.
    cancel_token : CancellationToken, optional
        Checked between phases, batches and validated swaps.

    Returns
    -------
    OptimizationResult
    """
    start = time.perf_counter()
    opt_config = opt_config or OptimizationConfig()
    rf = opt_config.risk_free_rate
    tickers = request.tickers

    _report(progress, 0, 1, "attribution")
    params = request.distribution_params()
    mu = np.array([p.mu for p in params])
    sigma = np.array([p.sigma for p in params])
    shrinkage = estimate_covariance(request)
    cov = shrinkage.covariance

    weights = request.weights
    cash_contribution = request.cash_contribution
    vol = portfolio_volatility(weights, cov)
    ret = portfolio_return(weights, mu, cash_contribution)
    sharpe = sharpe_ratio(ret, vol, rf)

    mctr = compute_mctr(weights, cov, vol)
    risk_contribution = compute_risk_contribution(weights, mctr, vol)
    isharpe = compute_incremental_sharpe(
        weights, mu, cov, rf, cash_contribution, opt_config.isharpe_step
    )
    asset_sharpe = compute_asset_sharpe(mu, sigma, rf)
    optimality = compute_optimality_ratio(mu, mctr, rf)
    _report(progress, 1, 1, "attribution")
    logger.info(
        "Current portfolio: return %.2f%%, volatility %.2f%%, Sharpe %.3f",
        ret * 100,
        vol * 100,
        sharpe,
    )

    check_cancelled(cancel_token, "swap analysis")
    _report(progress, 0, 1, "swaps")
    swap_matrix = compute_swap_matrix(
        weights, mu, cov, tickers, rf, opt_config.swap_size, cash_contribution
    )
    candidates = rank_swaps(swap_matrix, opt_config.top_k)
    _report(progress, 1, 1, "swaps")

    check_cancelled(cancel_token, "sampling")
    n_paths = opt_config.num_paths or request.config.num_paths
    sim_config = replace(request.config, num_paths=n_paths)
    sampler = CorrelatedSampler(params, cov, sim_config)
    asset_returns = sampler.sample(n_paths, cancel_token, progress)

    baseline, validated = validate_swaps(
        asset_returns,
        weights,
        candidates,
        rf,
        opt_config.swap_size,
        cash_contribution,
        opt_config.max_workers,
        cancel_token,
        progress,
    )

    check_cancelled(cancel_token, "risk parity")
    _report(progress, 0, 1, "risk_parity")
    gross = float(np.sum(np.abs(weights)))
    parity = solve_risk_parity(
        cov,
        opt_config.risk_parity_tolerance,
        opt_config.risk_parity_max_iter,
        gross=gross,
    )
    rp_vol = portfolio_volatility(parity.weights, cov)
    rp_ret = portfolio_return(parity.weights, mu, cash_contribution)
    rp_sharpe = sharpe_ratio(rp_ret, rp_vol, rf)
    _report(progress, 1, 1, "risk_parity")

    positions = tuple(
        PositionAttribution(
            ticker=t,
            weight=float(weights[i]),
            mu=float(mu[i]),
            sigma=float(sigma[i]),
            mctr=float(mctr[i]),
            risk_contribution=float(risk_contribution[i]),
            isharpe=float(isharpe[i]),
            asset_sharpe=float(asset_sharpe[i]),
            optimality_ratio=float(optimality[i]),
        )
        for i, t in enumerate(tickers)
    )

    result = OptimizationResult(
        current=CurrentPortfolio(
            portfolio_return=ret,
            portfolio_vol=vol,
            sharpe=sharpe,
            mc_results=baseline,
        ),
        positions=positions,
        top_swaps=tuple(validated),
        swap_matrix=swap_matrix,
        risk_parity=RiskParityResult(
            weights=dict(zip(tickers, parity.weights.tolist())),
            portfolio_return=rp_ret,
            portfolio_vol=rp_vol,
            sharpe=rp_sharpe,
            delta_sharpe=rp_sharpe - sharpe,
            weight_changes=dict(zip(tickers, (parity.weights - weights).tolist())),
            converged=parity.converged,
            iterations=parity.iterations,
            max_deviation=parity.max_deviation,
            diversification_ratio=diversification_ratio(parity.weights, cov),
        ),
        metadata=OptimizationMetadata(
            paths_per_scenario=n_paths,
            use_qmc=sim_config.use_qmc,
            risk_free_rate=rf,
            swap_size=opt_config.swap_size,
            gross_exposure=gross,
            cash_weight=request.cash_weight,
            shrinkage_intensity=shrinkage.intensity,
            elapsed_seconds=time.perf_counter() - start,
        ),
    )

    logger.info(
        "Optimization finished in %.2fs (%d swaps validated, risk parity %s)",
        result.metadata.elapsed_seconds,
        len(validated),
        "converged" if parity.converged else "not converged",
    )
    return result
