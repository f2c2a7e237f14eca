"""Stage scheduling, certification and composition.

Run lifecycle::

    NOT_STARTED -> RUNNING -> COMPOSED -> VERIFIED
                          \\-> FAILED

Every enabled stage becomes an asyncio task that waits for its declared
dependencies, then certifies its input through the proving client on a
worker thread, with exponential backoff on retryable failures.  Stages
without mutual dependencies run concurrently.  The first stage failure
cancels the rest (best effort: an in-flight prover call finishes on its
thread but its result is discarded) and the run fails as a whole.  The
composition stage is a fan-in barrier over every stage receipt.

Usage::

    controller = CompositionController(LocalProver(registry), config, registry)
    result = await controller.run(host)
    print(result.public_output.reserve_price, result.converged)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from reserve_engine.config import PipelineConfig
from reserve_engine.errors import ExternalProvingFailure, StageFailed
from reserve_engine.framework.prover import ProvingClient, Receipt
from reserve_engine.framework.receipt_cache import ReceiptCache
from reserve_engine.framework.retry import BackoffPolicy, is_retryable_error, with_retry
from reserve_engine.framework.stages import StageProgram, StageRegistry, composition_payload, default_registry
from reserve_engine.models import FeeSeries, PublicOutput, StageId
from reserve_engine.pipeline import HostComputation, compute_host

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPOSED = "composed"
    VERIFIED = "verified"
    FAILED = "failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CERTIFIED = "certified"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StageRecord:
    """Progress of one stage within a run."""

    stage_id: StageId
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    cached: bool = False
    receipt: Optional[Receipt] = None
    error: Optional[BaseException] = None
    started_at: float = 0.0
    finished_at: float = 0.0


@dataclass(frozen=True, eq=False)
class CompositionResult:
    """Outcome of a fully composed and verified run."""

    public_output: PublicOutput
    receipt: Receipt
    stage_receipts: Dict[StageId, Receipt]
    converged: bool
    stop_reason: str
    host: Optional[HostComputation] = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class CompositionController:
    """Drives one all-or-nothing certification run."""

    def __init__(
        self,
        client: ProvingClient,
        config: PipelineConfig | None = None,
        registry: StageRegistry | None = None,
        cache: ReceiptCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or PipelineConfig()
        self._client = client
        self._registry = registry or default_registry(self._config)
        self._cache = cache
        self._sleep = sleep
        self._policy = BackoffPolicy.from_settings(self._config.retry)
        self._state = RunState.NOT_STARTED
        self._records: Dict[StageId, StageRecord] = {}

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def records(self) -> Dict[StageId, StageRecord]:
        return dict(self._records)

    # ── Public API ────────────────────────────────────────────────

    async def run(self, host: HostComputation) -> CompositionResult:
        """Certify every enabled stage, compose, verify.

        Raises
        ------
        StageFailed
            Carrying the failing stage id and its last concrete error.
        """
        programs = self._registry.enabled()
        self._records = {p.stage_id: StageRecord(p.stage_id) for p in programs}
        self._records[StageId.COMPOSITION] = StageRecord(StageId.COMPOSITION)
        self._state = RunState.RUNNING
        payload = composition_payload(host)

        if not host.converged:
            LOGGER.warning(
                "fitted parameters did not converge (reason=%s); result is low confidence",
                host.fit.stop_reason,
            )

        receipts = await self._certify_stages(programs, payload)

        composition = self._registry.get(StageId.COMPOSITION)
        try:
            composed = await self._certify(
                composition, composition.select(payload, self._config), list(receipts.values()),
            )
        except Exception as exc:
            self._fail(StageId.COMPOSITION, exc)
            raise StageFailed(StageId.COMPOSITION.value, exc) from exc
        self._state = RunState.COMPOSED

        try:
            await with_retry(
                lambda: asyncio.to_thread(self._client.verify, composed, composition.image_id),
                self._policy, is_retryable_error, self._sleep, label="verify composition",
            )
        except Exception as exc:
            self._fail(StageId.COMPOSITION, exc)
            raise StageFailed(StageId.COMPOSITION.value, exc) from exc
        self._state = RunState.VERIFIED

        output = PublicOutput.from_dict(composed.public_output())
        LOGGER.info(
            "composition verified stages=%d reserve_price=%s converged=%s",
            len(receipts), output.reserve_price, host.converged,
        )
        return CompositionResult(
            public_output=output,
            receipt=composed,
            stage_receipts=receipts,
            converged=host.converged,
            stop_reason=host.fit.stop_reason,
            host=host,
        )

    # ── Scheduling ────────────────────────────────────────────────

    async def _certify_stages(
        self, programs: List[StageProgram], payload: Dict[str, Any],
    ) -> Dict[StageId, Receipt]:
        tasks: Dict[StageId, asyncio.Task] = {}
        for program in programs:
            deps = [tasks[d] for d in program.depends_on if d in tasks]
            tasks[program.stage_id] = asyncio.create_task(
                self._run_stage(program, payload, deps), name=program.stage_id.value,
            )
        if not tasks:
            return {}

        done, pending = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        failed = self._first_failure(tasks, done)
        if failed is None:
            return {sid: task.result() for sid, task in tasks.items()}

        stage_id, exc = failed
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for record in self._records.values():
            if record.status in (StageStatus.PENDING, StageStatus.RUNNING):
                record.status = StageStatus.CANCELLED
        self._fail(stage_id, exc)
        raise StageFailed(stage_id.value, exc) from exc

    @staticmethod
    def _first_failure(tasks: Dict[StageId, asyncio.Task], done: set) -> Optional[tuple]:
        # Earliest-registered failing stage, ignoring dependents that only
        # failed because a dependency did.
        for stage_id, task in tasks.items():
            if task in done and not task.cancelled() and task.exception() is not None:
                return stage_id, task.exception()
        return None

    async def _run_stage(
        self,
        program: StageProgram,
        payload: Dict[str, Any],
        deps: List[asyncio.Task],
    ) -> Receipt:
        if deps:
            await asyncio.gather(*deps)
        return await self._certify(program, program.select(payload, self._config), [])

    async def _certify(
        self,
        program: StageProgram,
        stage_input: Dict[str, Any],
        assumptions: List[Receipt],
    ) -> Receipt:
        record = self._records[program.stage_id]
        record.status = StageStatus.RUNNING
        record.started_at = time.time()
        LOGGER.info("stage started stage=%s image=%s", program.stage_id.value, program.image_id[:12])

        async def attempt() -> Receipt:
            record.attempts += 1
            receipt = await asyncio.to_thread(
                self._client.generate, program.image_id, stage_input, assumptions,
            )
            await asyncio.to_thread(self._client.verify, receipt, program.image_id)
            return receipt

        try:
            receipt = await self._cached_receipt(program, stage_input)
            if receipt is not None:
                record.cached = True
            else:
                receipt = await with_retry(
                    attempt, self._policy, is_retryable_error, self._sleep,
                    label=f"stage {program.stage_id.value}",
                )
        except Exception as exc:
            record.status = StageStatus.FAILED
            record.error = exc
            record.finished_at = time.time()
            LOGGER.error(
                "stage failed stage=%s attempts=%d error=%s",
                program.stage_id.value, record.attempts, exc,
            )
            raise
        if self._cache is not None and not record.cached:
            self._cache.put(program.image_id, stage_input, receipt)
            self._cache.save()

        record.status = StageStatus.CERTIFIED
        record.receipt = receipt
        record.finished_at = time.time()
        LOGGER.info(
            "stage certified stage=%s attempts=%d cached=%s",
            program.stage_id.value, record.attempts, record.cached,
        )
        return receipt

    async def _cached_receipt(self, program: StageProgram, stage_input: Dict[str, Any]) -> Optional[Receipt]:
        """Cached receipt for this input, re-verified; None if absent or rejected.

        A rejected entry is dropped so the stage is regenerated.  Retryable
        verifier errors propagate instead, since they say nothing about the
        receipt itself.
        """
        if self._cache is None:
            return None
        cached = self._cache.get(program.image_id, stage_input)
        if cached is None:
            return None
        try:
            await asyncio.to_thread(self._client.verify, cached, program.image_id)
        except ExternalProvingFailure as exc:
            if exc.retryable:
                raise
            LOGGER.warning(
                "discarding cached receipt stage=%s error=%s", program.stage_id.value, exc,
            )
            self._cache.discard(program.image_id, stage_input)
            return None
        return cached

    def _fail(self, stage_id: StageId, exc: BaseException) -> None:
        self._state = RunState.FAILED
        record = self._records.get(stage_id)
        if record is not None:
            record.status = StageStatus.FAILED
            record.error = exc


async def run_pipeline(
    series: FeeSeries,
    client: ProvingClient,
    config: PipelineConfig | None = None,
    registry: StageRegistry | None = None,
    cache: ReceiptCache | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CompositionResult:
    """Host computation on a worker thread, then certification and composition."""
    cfg = config or PipelineConfig()
    host = await asyncio.to_thread(compute_host, series, cfg)
    controller = CompositionController(client, cfg, registry, cache, sleep)
    return await controller.run(host)
