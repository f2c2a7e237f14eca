"""Stage programs and their registry.

Each stage is a small certified program with a declared contract:

* ``select``  - carve the stage input out of the composition payload;
* ``compute`` - decode the input, recompute independently, raise
  ``ToleranceExceeded`` on disagreement and return the journal;
* ``claim``   - the journal the composition program expects, rebuilt from
  its own payload (defaults to ``select``: checking stages commit their
  input once it has been verified).

The composition program accepts every stage receipt as an assumption,
re-derives the windows from the single hashed series, checks their
boundaries and commits the fixed-point public summary.

Usage::

    registry = default_registry(config)
    payload = composition_payload(host)
    stage_input = registry.get(StageId.TWAP).select(payload, config)
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from reserve_engine import fixed_point, hashing
from reserve_engine.config import PipelineConfig
from reserve_engine.data_source import check_sorted
from reserve_engine.errors import InvalidInput, ToleranceExceeded
from reserve_engine.framework.prover import ProgramEnv
from reserve_engine.framework.tolerance import ToleranceRule, ensure_within
from reserve_engine.model import statistics
from reserve_engine.model.decomposition import decompose
from reserve_engine.model.jump_diffusion import transition_pairs, verify_saddle_point
from reserve_engine.model.reserve_price import reserve_price_from_log_prices
from reserve_engine.models import DecompositionResult, FeeSeries, PublicOutput, StageId
from reserve_engine.pipeline import HostComputation, price_from_parameters, pricing_config

LOGGER = logging.getLogger(__name__)

Payload = Mapping[str, Any]
Selector = Callable[[Payload, PipelineConfig], Dict[str, Any]]
Compute = Callable[[Payload, PipelineConfig, ProgramEnv], Any]


# ---------------------------------------------------------------------------
# Program definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageProgram:
    """One certifiable unit, addressed by ``image_id``."""

    stage_id: StageId
    select: Selector
    compute: Compute
    claim: Optional[Selector] = None
    depends_on: Tuple[StageId, ...] = ()
    version: int = 1

    @property
    def image_id(self) -> str:
        return hashlib.sha256(f"reserve_engine/{self.stage_id.value}/v{self.version}".encode()).hexdigest()

    def expected_journal(self, payload: Payload, config: PipelineConfig) -> Any:
        return (self.claim or self.select)(payload, config)


class _BoundProgram:
    """A stage program bound to a config, as seen by a prover."""

    def __init__(self, program: StageProgram, config: PipelineConfig) -> None:
        self.program = program
        self.image_id = program.image_id
        self._config = config

    def run(self, env: ProgramEnv) -> None:
        env.commit(self.program.compute(env.read(), self._config, env))


class StageRegistry:
    """Stage id / image id -> program lookup."""

    def __init__(self, config: PipelineConfig) -> None:
        self._config = config
        self._by_stage: Dict[StageId, StageProgram] = {}
        self._by_image: Dict[str, StageProgram] = {}

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def register(self, program: StageProgram) -> None:
        if program.stage_id in self._by_stage:
            raise ValueError(f"stage {program.stage_id.value} already registered")
        self._by_stage[program.stage_id] = program
        self._by_image[program.image_id] = program

    def get(self, stage_id: StageId) -> StageProgram:
        try:
            return self._by_stage[stage_id]
        except KeyError:
            raise KeyError(f"no program registered for stage {stage_id.value}") from None

    def program(self, image_id: str) -> _BoundProgram:
        try:
            return _BoundProgram(self._by_image[image_id], self._config)
        except KeyError:
            raise KeyError(f"no program registered for image {image_id}") from None

    def enabled(self) -> List[StageProgram]:
        """Enabled certification stages in config order (composition excluded)."""
        return [
            self._by_stage[sid]
            for sid in self._config.enabled_stages
            if sid in self._by_stage and sid is not StageId.COMPOSITION
        ]


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _arr(payload: Payload, key: str) -> np.ndarray:
    return np.asarray(payload[key], dtype=np.float64)


def _history_values(payload: Payload) -> List[float]:
    return list(payload["values"])


def _window_values(payload: Payload, config: PipelineConfig) -> List[float]:
    values = _history_values(payload)
    return values[max(len(values) - config.pricing_window_hours, 0):]


def _window_timestamps(payload: Payload, config: PipelineConfig) -> List[int]:
    ts = list(payload["timestamps"])
    return ts[max(len(ts) - config.pricing_window_hours, 0):]


def _tolerance(payload: Payload, name: str) -> float:
    return float(payload["tolerances"][name])


def composition_payload(host: HostComputation) -> Dict[str, Any]:
    """Everything the stages and the composition program read."""
    cfg = host.config
    sim = cfg.simulation
    payload: Dict[str, Any] = {
        "timestamps": host.history.timestamps.tolist(),
        "values": host.history.values.tolist(),
        "data_hash": list(host.data_hash),
        "max_return": host.max_return,
        "twap_result": host.twap,
        "start_timestamp": host.pricing_window.start,
        "end_timestamp": host.pricing_window.end,
        "slope": host.decomposition.slope,
        "intercept": host.decomposition.intercept,
        "residuals": host.decomposition.residuals.tolist(),
        "season_params": host.decomposition.season_params.tolist(),
        "twap_7d": host.twap_7d.tolist(),
        "pt": host.pt.tolist(),
        "pt_1": host.pt_1.tolist(),
        "position": host.fit.params.as_array().tolist(),
        "reserve_price": host.reserve_price,
        "n_periods": sim.n_periods,
        "num_paths": sim.num_paths,
        "sampler": sim.sampler,
        "seed": sim.seed,
        "tolerances": {
            "floating_point": cfg.floating_point_tolerance,
            "twap": cfg.twap_tolerance,
            "reserve_price": cfg.reserve_price_tolerance,
            "gradient": cfg.gradient_tolerance,
            "optimizer": cfg.optimizer_tolerance,
            "element": cfg.element_tolerance,
            "matrix": cfg.matrix_tolerance,
        },
    }
    if host.log_prices is not None:
        payload["log_prices"] = host.log_prices.tolist()
    return payload


def _simulation_config(payload: Payload, config: PipelineConfig) -> PipelineConfig:
    sim = replace(config.simulation, sampler=str(payload["sampler"]), seed=payload["seed"])
    return replace(config, simulation=sim)


def _decomposition(payload: Payload) -> DecompositionResult:
    return DecompositionResult(
        slope=float(payload["slope"]),
        intercept=float(payload["intercept"]),
        season_params=_arr(payload, "season_params"),
        residuals=_arr(payload, "residuals"),
    )


# ---------------------------------------------------------------------------
# Stage 1: data commitment
# ---------------------------------------------------------------------------


def _select_history(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {"values": _history_values(payload)}


def _claim_hash(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {"hash": list(payload["data_hash"]), "values": _history_values(payload)}


def _compute_hash(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    values = list(payload["values"])
    if len(values) != config.history_hours:
        raise InvalidInput(f"expected {config.history_hours} hourly values, got {len(values)}")
    felts = [fixed_point.encode(float(v)) for v in values]
    words = hashing.commit_felts(felts, config.hash_batch_size)
    return {"hash": list(words), "values": [fixed_point.decode(f) for f in felts]}


# ---------------------------------------------------------------------------
# Stage 2: max return
# ---------------------------------------------------------------------------


def _claim_max_return(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {"values": _history_values(payload), "max_return": payload["max_return"]}


def _compute_max_return(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    values = _arr(payload, "values")
    result = statistics.max_return(
        values,
        min_length=config.history_hours,
        twap_window=config.max_return_twap_window,
        period=config.max_return_period,
    )
    return {"values": list(payload["values"]), "max_return": result}


# ---------------------------------------------------------------------------
# Stage 3: TWAP
# ---------------------------------------------------------------------------


def _select_twap(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {
        "values": _window_values(payload, config),
        "twap_result": payload["twap_result"],
        "tolerance": _tolerance(payload, "twap"),
    }


def _compute_twap(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    recomputed = statistics.calculate_twap(_arr(payload, "values"))
    rule = ToleranceRule.elementwise(float(payload["tolerance"]))
    ensure_within(rule, float(payload["twap_result"]), recomputed, "twap")
    return dict(payload)


# ---------------------------------------------------------------------------
# Stage 4: decomposition
# ---------------------------------------------------------------------------


def _select_decomposition(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {
        "timestamps": _window_timestamps(payload, config),
        "values": _window_values(payload, config),
        "slope": payload["slope"],
        "intercept": payload["intercept"],
        "residuals": list(payload["residuals"]),
        "season_params": list(payload["season_params"]),
        "tolerance": _tolerance(payload, "floating_point"),
    }


def _compute_decomposition(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    check_sorted(payload["timestamps"])
    result = decompose(FeeSeries(payload["timestamps"], payload["values"]))
    rule = ToleranceRule.elementwise(float(payload["tolerance"]))
    ensure_within(rule, float(payload["slope"]), result.slope, "slope")
    ensure_within(rule, float(payload["intercept"]), result.intercept, "intercept")
    ensure_within(rule, _arr(payload, "season_params"), result.season_params, "season_params")
    ensure_within(rule, _arr(payload, "residuals"), result.residuals, "residuals")
    return dict(payload)


# ---------------------------------------------------------------------------
# Stage 5: 7-day TWAP
# ---------------------------------------------------------------------------


def _select_twap_7d(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {
        "values": _window_values(payload, config),
        "twap_7d": list(payload["twap_7d"]),
        "tolerance": _tolerance(payload, "floating_point"),
    }


def _compute_twap_7d(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    recomputed = statistics.twap_7d(_arr(payload, "values"), config.twap_7d_window)
    rule = ToleranceRule.elementwise(float(payload["tolerance"]))
    ensure_within(rule, _arr(payload, "twap_7d"), recomputed, "twap_7d")
    return dict(payload)


# ---------------------------------------------------------------------------
# Stage 6: transition pairs
# ---------------------------------------------------------------------------


def _select_pairs(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {
        "residuals": list(payload["residuals"]),
        "pt": list(payload["pt"]),
        "pt_1": list(payload["pt_1"]),
        "tolerance": _tolerance(payload, "floating_point"),
    }


def _compute_pairs(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    pt, pt_1 = transition_pairs(_arr(payload, "residuals"))
    rule = ToleranceRule.elementwise(float(payload["tolerance"]))
    ensure_within(rule, _arr(payload, "pt"), pt, "pt")
    ensure_within(rule, _arr(payload, "pt_1"), pt_1, "pt_1")
    return dict(payload)


# ---------------------------------------------------------------------------
# Stage 7: saddle re-verification, simulation and reserve price
# ---------------------------------------------------------------------------


def _select_price(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    return {
        "start_timestamp": payload["start_timestamp"],
        "end_timestamp": payload["end_timestamp"],
        "data_length": len(payload["residuals"]),
        "position": list(payload["position"]),
        "pt": list(payload["pt"]),
        "pt_1": list(payload["pt_1"]),
        "gradient_tolerance": _tolerance(payload, "gradient"),
        "residuals": list(payload["residuals"]),
        "season_params": list(payload["season_params"]),
        "twap_7d": list(payload["twap_7d"]),
        "slope": payload["slope"],
        "intercept": payload["intercept"],
        "reserve_price": payload["reserve_price"],
        "tolerance": _tolerance(payload, "reserve_price"),
        "n_periods": payload["n_periods"],
        "num_paths": payload["num_paths"],
        "sampler": payload["sampler"],
        "seed": payload["seed"],
    }


def _verify_position(payload: Payload) -> None:
    tolerance = float(payload["gradient_tolerance"])
    if not verify_saddle_point(_arr(payload, "position"), _arr(payload, "pt"), _arr(payload, "pt_1"), tolerance):
        raise ToleranceExceeded(
            "saddle_point", tolerance=tolerance,
            detail="gradient at the fitted position is not within tolerance",
        )


def _compute_price(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    residuals = _arr(payload, "residuals")
    if len(residuals) != int(payload["data_length"]):
        raise InvalidInput(f"data_length {payload['data_length']} != {len(residuals)} residuals")
    _verify_position(payload)
    reserve, _ = price_from_parameters(
        residuals,
        _arr(payload, "position"),
        _decomposition(payload),
        _arr(payload, "twap_7d"),
        int(payload["start_timestamp"]),
        int(payload["end_timestamp"]),
        _simulation_config(payload, config),
        n_periods=int(payload["n_periods"]),
        num_paths=int(payload["num_paths"]),
    )
    LOGGER.info("stage reserve price recomputed=%.6f claimed=%.6f", reserve, float(payload["reserve_price"]))
    rule = ToleranceRule.elementwise(float(payload["tolerance"]))
    ensure_within(rule, float(payload["reserve_price"]), reserve, "reserve_price")
    return dict(payload)


# ---------------------------------------------------------------------------
# Optional: simulated log-price cross-check
# ---------------------------------------------------------------------------


def _select_log_prices(payload: Payload, config: PipelineConfig) -> Dict[str, Any]:
    if "log_prices" not in payload:
        raise InvalidInput("simulated log prices were not recorded by the host run")
    selected = _select_price(payload, config)
    selected.update({
        "log_prices": payload["log_prices"],
        "element_tolerance": _tolerance(payload, "element"),
        "matrix_tolerance": _tolerance(payload, "matrix"),
    })
    return selected


def _compute_log_prices(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
    cfg = _simulation_config(payload, config)
    _, recomputed = price_from_parameters(
        _arr(payload, "residuals"),
        _arr(payload, "position"),
        _decomposition(payload),
        _arr(payload, "twap_7d"),
        int(payload["start_timestamp"]),
        int(payload["end_timestamp"]),
        cfg,
        n_periods=int(payload["n_periods"]),
        num_paths=int(payload["num_paths"]),
    )
    claimed = _arr(payload, "log_prices")
    rule = ToleranceRule.aggregate(float(payload["element_tolerance"]), float(payload["matrix_tolerance"]))
    ensure_within(rule, claimed, recomputed, "simulated_log_prices")

    reserve = reserve_price_from_log_prices(claimed, _arr(payload, "twap_7d"), pricing_config(cfg))
    ensure_within(
        ToleranceRule.elementwise(float(payload["tolerance"])),
        float(payload["reserve_price"]), reserve, "reserve_price_from_log_prices",
    )
    return dict(payload)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def _check_boundaries(payload: Payload, config: PipelineConfig) -> None:
    values = _history_values(payload)
    timestamps = list(payload["timestamps"])
    if len(values) != config.history_hours or len(timestamps) != len(values):
        raise InvalidInput(
            f"composition expects {config.history_hours} hashed values, got "
            f"{len(values)} values / {len(timestamps)} timestamps"
        )
    check_sorted(timestamps)
    window_ts = _window_timestamps(payload, config)
    if len(payload["residuals"]) != len(window_ts):
        raise InvalidInput("residuals do not cover the pricing window")
    if window_ts[0] != payload["start_timestamp"] or window_ts[-1] != payload["end_timestamp"]:
        raise InvalidInput(
            "pricing window is not the suffix of the hashed series: "
            f"[{window_ts[0]}, {window_ts[-1]}] vs "
            f"[{payload['start_timestamp']}, {payload['end_timestamp']}]"
        )


def _make_composition(registry: StageRegistry) -> StageProgram:
    def compute(payload: Payload, config: PipelineConfig, env: ProgramEnv) -> Dict[str, Any]:
        _check_boundaries(payload, config)
        for program in registry.enabled():
            env.verify(program.image_id, program.expected_journal(payload, config))

        fp = _tolerance(payload, "floating_point")
        window_ts = _window_timestamps(payload, config)
        output = PublicOutput(
            data_hash=tuple(int(w) for w in payload["data_hash"]),
            start_timestamp=int(window_ts[0]),
            end_timestamp=int(window_ts[-1]),
            reserve_price_start_timestamp=int(window_ts[0]),
            reserve_price_end_timestamp=int(window_ts[-1]),
            twap_start_timestamp=int(window_ts[0]),
            twap_end_timestamp=int(window_ts[-1]),
            max_return_start_timestamp=int(payload["timestamps"][0]),
            max_return_end_timestamp=int(payload["timestamps"][-1]),
            reserve_price=fixed_point.ensure_representable(float(payload["reserve_price"]), fp, "reserve_price"),
            twap_result=fixed_point.ensure_representable(float(payload["twap_result"]), fp, "twap_result"),
            max_return=fixed_point.ensure_representable(float(payload["max_return"]), fp, "max_return"),
            floating_point_tolerance=fixed_point.to_hex(fp),
            reserve_price_tolerance=fixed_point.to_hex(_tolerance(payload, "reserve_price")),
            twap_tolerance=fixed_point.to_hex(_tolerance(payload, "twap")),
            gradient_tolerance=fixed_point.to_hex(_tolerance(payload, "gradient")),
            optimizer_tolerance=fixed_point.to_hex(_tolerance(payload, "optimizer")),
        )
        if config.stage_enabled(StageId.SIMULATED_LOG_PRICES):
            output = replace(
                output,
                element_tolerance=fixed_point.to_hex(_tolerance(payload, "element")),
                matrix_tolerance=fixed_point.to_hex(_tolerance(payload, "matrix")),
            )
        return output.to_dict()

    return StageProgram(
        stage_id=StageId.COMPOSITION,
        select=lambda payload, config: dict(payload),
        compute=compute,
        depends_on=tuple(p.stage_id for p in registry.enabled()),
    )


# ---------------------------------------------------------------------------
# Default registry
# ---------------------------------------------------------------------------


def default_registry(config: PipelineConfig) -> StageRegistry:
    registry = StageRegistry(config)
    registry.register(StageProgram(StageId.HASH_COMMIT, _select_history, _compute_hash, claim=_claim_hash))
    registry.register(StageProgram(StageId.MAX_RETURN, _select_history, _compute_max_return, claim=_claim_max_return))
    registry.register(StageProgram(StageId.TWAP, _select_twap, _compute_twap))
    registry.register(StageProgram(StageId.DECOMPOSITION, _select_decomposition, _compute_decomposition))
    registry.register(StageProgram(StageId.TWAP_7D, _select_twap_7d, _compute_twap_7d))
    registry.register(StageProgram(StageId.TRANSITION_PAIRS, _select_pairs, _compute_pairs))
    registry.register(StageProgram(StageId.PRICE_SIMULATION, _select_price, _compute_price))
    registry.register(StageProgram(
        StageId.SIMULATED_LOG_PRICES, _select_log_prices, _compute_log_prices,
        depends_on=(StageId.PRICE_SIMULATION,),
    ))
    registry.register(_make_composition(registry))
    return registry
