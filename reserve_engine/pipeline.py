"""Host-side computation of every value the stages later certify.

The host runs the full numerical pipeline once, outside any certified
environment:

    history  ─┬─> data hash, max return
              └─> pricing window ─┬─> TWAP, 7-day TWAP
                                  └─> decomposition ─> (pt, pt_1) ─> fit
                                                                  └─> simulate ─> reserve price

The fitted parameters are trusted from here on; stages only re-verify
them as a saddle point.

Usage::

    host = compute_host(series, config)
    print(host.reserve_price, host.converged)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from reserve_engine import hashing
from reserve_engine.config import PipelineConfig
from reserve_engine.errors import InsufficientData
from reserve_engine.model import statistics
from reserve_engine.model.decomposition import decompose
from reserve_engine.model.jump_diffusion import (
    EstimatorConfig,
    JumpDiffusionEstimator,
    transition_pairs,
)
from reserve_engine.model.reserve_price import (
    PricingConfig,
    reserve_price_from_log_prices,
    simulated_log_prices,
)
from reserve_engine.model.simulation import PriceSimulator, SimulatorConfig
from reserve_engine.models import (
    DecompositionResult,
    FeeSeries,
    FittedModelParameters,
    OptimizationResult,
    StageId,
)

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config adapters
# ---------------------------------------------------------------------------


def estimator_config(config: PipelineConfig) -> EstimatorConfig:
    return EstimatorConfig(
        tolerance=config.optimizer_tolerance,
        max_iterations=config.max_iterations,
        line_search_max_halvings=config.line_search_max_halvings,
    )


def simulator_config(config: PipelineConfig, n_periods: int | None = None, num_paths: int | None = None) -> SimulatorConfig:
    sim = config.simulation
    return SimulatorConfig(
        num_paths=sim.num_paths if num_paths is None else num_paths,
        n_periods=sim.n_periods if n_periods is None else n_periods,
        sampler=sim.sampler,
        seed=sim.seed,
    )


def pricing_config(config: PipelineConfig) -> PricingConfig:
    # Macro shocks draw from their own stream (seed + 1).
    seed = None if config.simulation.seed is None else config.simulation.seed + 1
    return PricingConfig(
        cap_ratio=config.cap_ratio,
        discount_rate=config.discount_rate,
        annual_drift=config.annual_drift,
        terminal_window=config.twap_7d_window,
        seed=seed,
    )


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class HostComputation:
    """Everything computed on the host for one run."""

    config: PipelineConfig
    history: FeeSeries
    pricing_window: FeeSeries
    data_hash: Tuple[int, ...]
    max_return: float
    twap: float
    decomposition: DecompositionResult
    twap_7d: np.ndarray
    pt: np.ndarray
    pt_1: np.ndarray
    fit: OptimizationResult
    reserve_price: float
    log_prices: Optional[np.ndarray] = None

    @property
    def converged(self) -> bool:
        return self.fit.converged


def price_from_parameters(
    residuals: np.ndarray,
    position: np.ndarray,
    decomposition: DecompositionResult,
    twap_7d: np.ndarray,
    start_timestamp: int,
    end_timestamp: int,
    config: PipelineConfig,
    n_periods: int | None = None,
    num_paths: int | None = None,
) -> Tuple[float, np.ndarray]:
    """Simulate from fitted parameters and price; shared by host and stage 7.

    Returns
    -------
    (reserve_price, simulated_log_prices)
    """
    simulator = PriceSimulator(simulator_config(config, n_periods, num_paths))
    paths = simulator.simulate(FittedModelParameters.from_array(position), float(residuals[-1]))
    pricing = pricing_config(config)
    log_prices = simulated_log_prices(
        paths, decomposition, twap_7d,
        start_timestamp, end_timestamp, len(residuals), pricing,
    )
    return reserve_price_from_log_prices(log_prices, twap_7d, pricing), log_prices


def compute_host(series: FeeSeries, config: PipelineConfig | None = None) -> HostComputation:
    cfg = config or PipelineConfig()
    if len(series) < cfg.history_hours:
        raise InsufficientData(cfg.history_hours, len(series), "history")

    history = series.tail(cfg.history_hours)
    window = history.tail(cfg.pricing_window_hours)
    LOGGER.info(
        "host computation history=%d pricing_window=%d start=%d end=%d",
        len(history), len(window), window.start, window.end,
    )

    data_hash = hashing.commit_values(history.values, cfg.hash_batch_size)
    max_ret = statistics.max_return(
        history.values,
        min_length=cfg.history_hours,
        twap_window=cfg.max_return_twap_window,
        period=cfg.max_return_period,
    )
    twap = statistics.calculate_twap(window.values)
    twap_7d = statistics.twap_7d(window.values, cfg.twap_7d_window)

    decomposition = decompose(window)
    pt, pt_1 = transition_pairs(decomposition.residuals)
    fit = JumpDiffusionEstimator(estimator_config(cfg)).fit_pairs(pt, pt_1)

    reserve, log_prices = price_from_parameters(
        decomposition.residuals, fit.params.as_array(), decomposition, twap_7d,
        window.start, window.end, cfg,
    )
    LOGGER.info(
        "host reserve price=%.6f twap=%.6f max_return=%.6f converged=%s",
        reserve, twap, max_ret, fit.converged,
    )

    return HostComputation(
        config=cfg,
        history=history,
        pricing_window=window,
        data_hash=data_hash,
        max_return=max_ret,
        twap=twap,
        decomposition=decomposition,
        twap_7d=twap_7d,
        pt=pt,
        pt_1=pt_1,
        fit=fit,
        reserve_price=reserve,
        log_prices=log_prices if cfg.stage_enabled(StageId.SIMULATED_LOG_PRICES) else None,
    )
