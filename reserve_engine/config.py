"""Configuration for the reserve-price pipeline.

One ``PipelineConfig`` is built per run and passed explicitly to the host
computation, every stage program and the controller.  All env vars are
prefixed with ``RESERVE_``; a ``.env`` file in the working directory is
honoured but never overrides variables already set.

Usage::

    config = load_pipeline_config()
    config = replace(config, simulation=replace(config.simulation, num_paths=2000))
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from reserve_engine.errors import InvalidInput
from reserve_engine.model.simulation import SAMPLERS
from reserve_engine.models import StageId


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


DEFAULT_STAGES: Tuple[StageId, ...] = (
    StageId.HASH_COMMIT,
    StageId.MAX_RETURN,
    StageId.TWAP,
    StageId.DECOMPOSITION,
    StageId.TWAP_7D,
    StageId.TRANSITION_PAIRS,
    StageId.PRICE_SIMULATION,
)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimulationSettings:
    """Monte Carlo settings.

    Parameters
    ----------
    num_paths:
        Simulated paths per run. Default 4000.
    n_periods:
        Forward hourly periods per path. Default 720 (30 days).
    sampler:
        ``"pseudo"`` (numpy Generator) or ``"sobol"`` (scipy qmc,
        deterministic). Default ``"pseudo"``.
    seed:
        Seed for the pseudo-random sampler; None draws fresh entropy.
    """

    num_paths: int = 4000
    n_periods: int = 720
    sampler: str = "pseudo"
    seed: Optional[int] = None


@dataclass(frozen=True)
class RetrySettings:
    """Backoff for certificate-generation calls.

    Parameters
    ----------
    max_attempts:
        Total attempts per stage including the first. Default 10.
    initial_delay_seconds:
        Sleep before the second attempt. Default 5.
    multiplier:
        Growth factor between sleeps. Default 2 (5s, 10s, 20s, ...).
    max_delay_seconds:
        Optional ceiling on a single sleep. Default None (uncapped).
    """

    max_attempts: int = 10
    initial_delay_seconds: float = 5.0
    multiplier: float = 2.0
    max_delay_seconds: Optional[float] = None


# ---------------------------------------------------------------------------
# Pipeline config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Every window, tolerance and limit used by a pipeline run.

    Defaults are the two-month proof-of-concept profile; see
    :func:`production_profile` for the eight-month one.  Tolerances are
    percentages.
    """

    # Windows (hours of hourly data).
    history_hours: int = 1440
    pricing_window_hours: int = 720
    twap_7d_window: int = 168
    max_return_twap_window: int = 240
    max_return_period: int = 240
    hash_batch_size: int = 180
    timestamp_unit: str = "s"

    # Tolerances (%).
    twap_tolerance: float = 1.0
    floating_point_tolerance: float = 1e-5
    reserve_price_tolerance: float = 5.0
    element_tolerance: float = 10.0
    matrix_tolerance: float = 5.0

    # Optimizer.
    gradient_tolerance: float = 5e-2
    optimizer_tolerance: float = 1e-4
    max_iterations: int = 2400
    line_search_max_halvings: int = 60

    # Option terms.
    cap_ratio: float = 1.3
    discount_rate: float = 0.05
    annual_drift: float = 0.05

    enabled_stages: Tuple[StageId, ...] = DEFAULT_STAGES
    simulation: SimulationSettings = field(default_factory=SimulationSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    def stage_enabled(self, stage_id: StageId) -> bool:
        return stage_id in self.enabled_stages


def production_profile(base: PipelineConfig | None = None) -> PipelineConfig:
    """Eight months of history with 90-day pricing and 30-day return windows."""
    return replace(
        base or PipelineConfig(),
        history_hours=5760,
        pricing_window_hours=2160,
        max_return_twap_window=720,
        max_return_period=720,
    )


def _parse_stages(value: str | None) -> Tuple[StageId, ...]:
    names = _as_csv(value)
    if not names:
        return DEFAULT_STAGES
    known = {stage.value for stage in StageId}
    unknown = [name for name in names if name not in known]
    if unknown:
        raise InvalidInput(f"unknown stage(s) {unknown} in RESERVE_STAGES; expected some of {sorted(known)}")
    return tuple(StageId(name) for name in names)


def _as_choice(value: str | None, default: str, choices: Tuple[str, ...], name: str) -> str:
    choice = default if value is None or not value.strip() else value.strip().lower()
    if choice not in choices:
        raise InvalidInput(f"{name}={choice!r} is not one of {list(choices)}")
    return choice


def load_pipeline_config() -> PipelineConfig:
    """Build ``PipelineConfig`` from ``RESERVE_*`` environment variables.

    Raises ``InvalidInput`` for any value that does not parse.
    """
    load_dotenv(override=False)
    try:
        return _config_from_env()
    except ValueError as exc:
        raise InvalidInput(f"invalid RESERVE_* setting: {exc}") from exc


def _config_from_env() -> PipelineConfig:
    base = PipelineConfig()
    if os.getenv("RESERVE_PROFILE", "poc").strip().lower() == "production":
        base = production_profile(base)

    simulation = SimulationSettings(
        num_paths=_as_int(os.getenv("RESERVE_NUM_PATHS"), base.simulation.num_paths),
        n_periods=_as_int(os.getenv("RESERVE_N_PERIODS"), base.simulation.n_periods),
        sampler=_as_choice(
            os.getenv("RESERVE_SAMPLER"), base.simulation.sampler, SAMPLERS, "RESERVE_SAMPLER"
        ),
        seed=_as_optional_int(os.getenv("RESERVE_SEED")),
    )
    retry = RetrySettings(
        max_attempts=_as_int(os.getenv("RESERVE_RETRY_MAX_ATTEMPTS"), base.retry.max_attempts),
        initial_delay_seconds=_as_float(
            os.getenv("RESERVE_RETRY_INITIAL_DELAY_SECONDS"), base.retry.initial_delay_seconds
        ),
        multiplier=_as_float(os.getenv("RESERVE_RETRY_MULTIPLIER"), base.retry.multiplier),
        max_delay_seconds=_as_optional_float(os.getenv("RESERVE_RETRY_MAX_DELAY_SECONDS")),
    )

    stages = _parse_stages(os.getenv("RESERVE_STAGES"))
    if _as_bool(os.getenv("RESERVE_CHECK_SIMULATED_PRICES"), False) and (
        StageId.SIMULATED_LOG_PRICES not in stages
    ):
        stages = stages + (StageId.SIMULATED_LOG_PRICES,)

    return PipelineConfig(
        history_hours=_as_int(os.getenv("RESERVE_HISTORY_HOURS"), base.history_hours),
        pricing_window_hours=_as_int(
            os.getenv("RESERVE_PRICING_WINDOW_HOURS"), base.pricing_window_hours
        ),
        twap_7d_window=_as_int(os.getenv("RESERVE_TWAP_7D_WINDOW"), base.twap_7d_window),
        max_return_twap_window=_as_int(
            os.getenv("RESERVE_MAX_RETURN_TWAP_WINDOW"), base.max_return_twap_window
        ),
        max_return_period=_as_int(os.getenv("RESERVE_MAX_RETURN_PERIOD"), base.max_return_period),
        hash_batch_size=_as_int(os.getenv("RESERVE_HASH_BATCH_SIZE"), base.hash_batch_size),
        timestamp_unit=_as_choice(
            os.getenv("RESERVE_TIMESTAMP_UNIT"), base.timestamp_unit, ("s", "ms"), "RESERVE_TIMESTAMP_UNIT"
        ),
        twap_tolerance=_as_float(os.getenv("RESERVE_TWAP_TOLERANCE"), base.twap_tolerance),
        floating_point_tolerance=_as_float(
            os.getenv("RESERVE_FLOATING_POINT_TOLERANCE"), base.floating_point_tolerance
        ),
        reserve_price_tolerance=_as_float(
            os.getenv("RESERVE_RESERVE_PRICE_TOLERANCE"), base.reserve_price_tolerance
        ),
        element_tolerance=_as_float(os.getenv("RESERVE_ELEMENT_TOLERANCE"), base.element_tolerance),
        matrix_tolerance=_as_float(os.getenv("RESERVE_MATRIX_TOLERANCE"), base.matrix_tolerance),
        gradient_tolerance=_as_float(
            os.getenv("RESERVE_GRADIENT_TOLERANCE"), base.gradient_tolerance
        ),
        optimizer_tolerance=_as_float(
            os.getenv("RESERVE_OPTIMIZER_TOLERANCE"), base.optimizer_tolerance
        ),
        max_iterations=_as_int(os.getenv("RESERVE_MAX_ITERATIONS"), base.max_iterations),
        line_search_max_halvings=_as_int(
            os.getenv("RESERVE_LINE_SEARCH_MAX_HALVINGS"), base.line_search_max_halvings
        ),
        cap_ratio=_as_float(os.getenv("RESERVE_CAP_RATIO"), base.cap_ratio),
        discount_rate=_as_float(os.getenv("RESERVE_DISCOUNT_RATE"), base.discount_rate),
        annual_drift=_as_float(os.getenv("RESERVE_ANNUAL_DRIFT"), base.annual_drift),
        enabled_stages=stages,
        simulation=simulation,
        retry=retry,
    )
