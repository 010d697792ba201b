"""
lockstep — Call-Loop Orchestrator

Drives one generated sequence through both executors:

  Pending ──▶ Stepping ──▶ Pending     (observables agree, next operation)
                      └──▶ Aborted     (divergence report or normalization fault)
  Pending ──▶ Completed                (sequence exhausted)
  Pending ──▶ Cancelled                (cancel() observed between steps)

Cancellation is per run: every run owns its own flag, so cancelling never
leaks into runs started afterwards. ``run_many`` adds one flag for the batch
so seeds still waiting for a slot stop too.

Steps are strictly sequential. Nothing is applied to either side after the
first divergence, so the model state at that point is kept on the result.
Collaborator faults (missing entity, unresolvable handle, generator failure)
propagate to the caller.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable

import structlog

from lockstep.config import LockstepConfig
from lockstep.engine.comparator import Comparator
from lockstep.engine.errors import NormalizationFault
from lockstep.engine.generator import GeneratorAdapter
from lockstep.engine.model import ModelExecutor
from lockstep.engine.normalizer import ErrorNormalizer
from lockstep.engine.system import SystemExecutor
from lockstep.engine.types import (
    ErrorCode,
    Failure,
    ObservableSet,
    PrimaryOutcome,
    RunResult,
    RunStatus,
    Success,
    SystemStep,
)
from lockstep.primitives.common import new_id
from lockstep.telemetry.logging import bind_run_context, clear_run_context

if TYPE_CHECKING:
    from lockstep.engine.generator import GenerateFn, SequenceGenerator
    from lockstep.engine.model import ApplyFn, ReferenceModel
    from lockstep.engine.system import CustomEntrypointDispatcher, SystemClient

logger = structlog.get_logger().bind(system="lockstep.orchestrator")


class DifferentialRunner:
    """
    Runs seeds against a reference model and fresh system-under-test instances.

    ``system_factory`` is called once per run; runs never share a system or
    a model state, so ``run_many`` can execute them concurrently.
    """

    def __init__(
        self,
        generator: SequenceGenerator | GenerateFn,
        model: ReferenceModel | ApplyFn,
        system_factory: Callable[[], SystemClient],
        *,
        config: LockstepConfig | None = None,
        dispatcher: CustomEntrypointDispatcher | None = None,
        normalizer: ErrorNormalizer | None = None,
    ) -> None:
        self._config = config or LockstepConfig()
        self._generator = GeneratorAdapter(generator)
        self._model = model
        self._system_factory = system_factory
        self._dispatcher = dispatcher
        self._normalizer = normalizer or self._build_normalizer()
        # run_id → (seed, cancel flag) for every run in progress
        self._active: dict[str, tuple[int, asyncio.Event]] = {}
        self._batches: set[asyncio.Event] = set()

    # ── Public API ─────────────────────────────────────────────────────────────

    def cancel(self, seed: int | None = None) -> None:
        """
        Stop runs in progress before their next step.

        With ``seed``, only runs of that seed are stopped; otherwise every
        active run and every pending seed of an active batch.
        """
        for run_seed, flag in self._active.values():
            if seed is None or run_seed == seed:
                flag.set()
        if seed is None:
            for batch in self._batches:
                batch.set()

    @property
    def active_runs(self) -> dict[str, int]:
        """run_id → seed of every run in progress."""
        return {run_id: seed for run_id, (seed, _) in self._active.items()}

    async def run(self, seed: int) -> RunResult:
        return await self._run_tracked(seed, batch=None)

    async def run_many(self, seeds: list[int]) -> list[RunResult]:
        """Run independent seeds concurrently, results in seed order."""
        semaphore = asyncio.Semaphore(max(1, self._config.runner.concurrency))
        batch = asyncio.Event()
        self._batches.add(batch)

        async def _bounded(seed: int) -> RunResult:
            async with semaphore:
                return await self._run_tracked(seed, batch=batch)

        try:
            return list(await asyncio.gather(*(_bounded(s) for s in seeds)))
        finally:
            self._batches.discard(batch)

    # ── Call loop ──────────────────────────────────────────────────────────────

    async def _run_tracked(self, seed: int, batch: asyncio.Event | None) -> RunResult:
        run_id = new_id()
        flag = asyncio.Event()
        self._active[run_id] = (seed, flag)
        bind_run_context(run_id, seed)

        def _cancelled() -> bool:
            return flag.is_set() or (batch is not None and batch.is_set())

        try:
            return await self._run(run_id, seed, _cancelled)
        finally:
            del self._active[run_id]
            clear_run_context()

    async def _run(self, run_id: str, seed: int, cancelled: Callable[[], bool]) -> RunResult:
        start = time.monotonic()
        runner_cfg = self._config.runner

        generated = self._generator.generate(seed, self._config.generator)
        env = generated.environment
        total = len(generated.operations)

        model = ModelExecutor(self._model, env.tracked)
        system = SystemExecutor(
            self._system_factory(),
            env.primary,
            env.tracked,
            dispatcher=self._dispatcher,
            funding_amount=runner_cfg.funding_amount,
            step_timeout_s=runner_cfg.step_timeout_s,
            unsupported_custom=runner_cfg.unsupported_custom,
        )
        roles = {handle: role for role, handle in env.handles.items()}
        comparator = Comparator(env.tracked, roles)

        await system.prepare(generated)
        logger.info("run_started", operations=total, start_level=env.start_level)

        def _result(status: RunStatus, steps: int, **kwargs: object) -> RunResult:
            return RunResult(
                run_id=run_id,
                seed=seed,
                status=status,
                steps_applied=steps,
                total_operations=total,
                duration_ms=int((time.monotonic() - start) * 1000),
                **kwargs,
            )

        state = generated.initial_state
        for step, op in enumerate(generated.operations, start=1):
            if cancelled():
                logger.info("run_cancelled", before_step=step)
                return _result(RunStatus.CANCELLED, step - 1)

            state, model_observed = model.apply(state, op)
            system_step = await system.apply(op)
            logger.debug("step_applied", step=step, kind=op.kind, sender=op.sender)

            try:
                system_observed = self._observe(system_step)
            except NormalizationFault as fault:
                logger.error("run_aborted_fault", step=step, kind=op.kind, fault=str(fault))
                return _result(RunStatus.ABORTED, step, fault=str(fault), model_state=state)

            report = comparator.compare(step, op, model_observed, system_observed)
            if report is not None:
                logger.warning(
                    "divergence_detected",
                    step=step,
                    kind=op.kind,
                    check=report.check.value,
                    field=report.field,
                )
                return _result(RunStatus.ABORTED, step, report=report, model_state=state)

        logger.info("run_completed", steps=total)
        return _result(RunStatus.COMPLETED, total, model_state=state)

    def _observe(self, step: SystemStep) -> ObservableSet:
        primary: PrimaryOutcome
        if step.failed:
            primary = Failure(code=self._normalizer.normalize(step.raw_failure))
        else:
            primary = Success(storage=step.storage)
        return ObservableSet(
            primary=primary,
            primary_balance=step.primary_balance,
            entities=step.entities,
        )

    def _build_normalizer(self) -> ErrorNormalizer:
        numeric = self._config.runner.timeout_error_code
        return ErrorNormalizer(timeout_code=ErrorCode(numeric) if numeric is not None else None)
