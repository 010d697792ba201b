"""
Unit tests for the DifferentialRunner.

The DAO domain supplies real collaborators; small EmulatedChain subclasses
inject the bugs and odd failure payloads the runner has to react to.
"""

from __future__ import annotations

from typing import Any, Callable

import pytest

from lockstep.config import GeneratorConfig, LockstepConfig, RunnerConfig
from lockstep.dao import DaoGenerator, DaoModel, EmulatedChain, FrozenBalance, environment, initial_state
from lockstep.engine.errors import DivergenceError, GeneratorError, SystemFailure, UnresolvableHandleError
from lockstep.engine.orchestrator import DifferentialRunner
from lockstep.engine.types import (
    CheckName,
    DefaultCall,
    Freeze,
    GeneratedRun,
    ModelState,
    OperationBase,
    Propose,
    RunStatus,
    TextProposal,
    Vote,
)

ALICE = "tz1alice"
BOB = "tz1bob"


# ─── Fixtures ─────────────────────────────────────────────────────


def propose_then_vote(seed: int, config: GeneratorConfig) -> GeneratedRun:
    """A and B hold frozen tokens; A proposes, B votes on it."""
    state = initial_state(config)
    state.storage.frozen = {
        ALICE: FrozenBalance(total=5),
        BOB: FrozenBalance(total=5),
    }
    return GeneratedRun(
        seed=seed,
        environment=environment(config),
        operations=[
            Propose(sender=ALICE, frozen_tokens=1, metadata=TextProposal(text="hello")),
            Vote(sender=BOB, owner=BOB, proposal_key=0, tokens=2),
            Freeze(sender=ALICE, tokens=1),
            DefaultCall(sender=BOB),
        ],
        initial_state=state,
    )


class _FlippedVoteChain(EmulatedChain):
    """Records every vote the other way round."""

    def _ep_vote(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        super()._ep_vote(s, sender, {**arg, "upvote": not arg["upvote"]})


class _GarbledVoteChain(EmulatedChain):
    """Fails every vote with a payload no normalizer rule covers."""

    def _ep_vote(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        raise SystemFailure({"string": "internal error"})


class _NoGuardianChain(EmulatedChain):
    async def resolve(self, handle: str) -> bool:
        return handle != "KT1Guardian" and await super().resolve(handle)


class _CancellingChain(EmulatedChain):
    """Calls ``cancel(seed)`` while applying a freeze, optionally for one seed only."""

    def __init__(self, cancel: Callable[[int], None], only_seed: int | None = None) -> None:
        super().__init__()
        self._cancel = cancel
        self._only_seed = only_seed
        self._seed: int | None = None

    async def prepare(self, run: GeneratedRun) -> None:
        await super().prepare(run)
        self._seed = run.seed

    def _ep_freeze(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        super()._ep_freeze(s, sender, arg)
        if self._seed is not None and self._only_seed in (None, self._seed):
            self._cancel(self._seed)


class _CountingModel(DaoModel):
    def __init__(self) -> None:
        self.calls = 0

    def apply(self, state: ModelState, op: OperationBase) -> None:
        self.calls += 1
        super().apply(state, op)


def make_runner(chain_cls: type[EmulatedChain] = EmulatedChain, **kwargs: Any):
    chains: list[EmulatedChain] = []

    def factory() -> EmulatedChain:
        chain = chain_cls()
        chains.append(chain)
        return chain

    model = kwargs.pop("model", None) or DaoModel()
    generator = kwargs.pop("generator", propose_then_vote)
    runner = DifferentialRunner(generator, model, factory, **kwargs)
    return runner, chains


# ─── Call loop ────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_agreeing_run_completes(self):
        runner, chains = make_runner()
        result = await runner.run(7)
        assert result.status == RunStatus.COMPLETED
        assert result.passed
        assert result.steps_applied == 4
        assert result.total_operations == 4
        assert result.report is None
        assert chains[0].submissions == 4
        assert result.model_state is not None
        assert result.model_state.storage.proposals[0].upvotes == 2

    @pytest.mark.asyncio
    async def test_divergence_stops_at_first_mismatch(self):
        model = _CountingModel()
        runner, chains = make_runner(_FlippedVoteChain, model=model)
        result = await runner.run(7)

        assert result.status == RunStatus.ABORTED
        assert result.steps_applied == 2
        assert result.report is not None
        assert result.report.step == 2
        assert result.report.check == CheckName.PRIMARY_OUTCOME
        assert isinstance(result.report.operation, Vote)
        # nothing after step 2 reaches either side
        assert model.calls == 2
        assert chains[0].submissions == 2
        assert result.model_state is not None
        assert result.model_state.storage.proposals[0].upvotes == 2

    @pytest.mark.asyncio
    async def test_divergence_raises_as_assertion(self):
        runner, _ = make_runner(_FlippedVoteChain)
        result = await runner.run(7)
        with pytest.raises(DivergenceError) as exc_info:
            result.raise_for_divergence()
        assert "* Step 2, call with:" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unrecognized_failure_is_fatal_not_divergence(self):
        runner, _ = make_runner(_GarbledVoteChain)
        result = await runner.run(7)
        assert result.status == RunStatus.ABORTED
        assert result.report is None
        assert result.fault is not None
        assert "internal error" in result.fault
        assert result.steps_applied == 2


# ─── Faults, cancellation, batches ────────────────────────────────


class TestControl:
    @pytest.mark.asyncio
    async def test_cancel_between_steps(self):
        model = _CountingModel()
        chains: list[EmulatedChain] = []

        def factory() -> EmulatedChain:
            chain = _CancellingChain(lambda seed: runner.cancel(seed=seed))
            chains.append(chain)
            return chain

        runner = DifferentialRunner(propose_then_vote, model, factory)
        result = await runner.run(7)

        # freeze is step 3; step 4 reaches neither side
        assert result.status == RunStatus.CANCELLED
        assert result.steps_applied == 3
        assert result.report is None
        assert result.fault is None
        assert model.calls == 3
        assert chains[0].submissions == 3
        assert runner.active_runs == {}

    @pytest.mark.asyncio
    async def test_cancel_does_not_leak_into_later_runs(self):
        runner, chains = make_runner()
        runner.cancel()
        first = await runner.run(1)
        runner.cancel(seed=2)
        second = await runner.run(2)
        assert first.status == RunStatus.COMPLETED
        assert second.status == RunStatus.COMPLETED
        assert [c.submissions for c in chains] == [4, 4]

    @pytest.mark.asyncio
    async def test_cancel_one_seed_of_a_batch(self):
        def factory() -> EmulatedChain:
            return _CancellingChain(lambda seed: runner.cancel(seed=seed), only_seed=1)

        runner = DifferentialRunner(propose_then_vote, DaoModel(), factory)
        first, second = await runner.run_many([1, 2])
        assert (first.status, first.steps_applied) == (RunStatus.CANCELLED, 3)
        assert (second.status, second.steps_applied) == (RunStatus.COMPLETED, 4)

    @pytest.mark.asyncio
    async def test_cancel_all_stops_queued_batch_seeds(self):
        def factory() -> EmulatedChain:
            return _CancellingChain(lambda seed: runner.cancel())

        config = LockstepConfig(runner=RunnerConfig(concurrency=1))
        runner = DifferentialRunner(propose_then_vote, DaoModel(), factory, config=config)
        results = await runner.run_many([1, 2, 3])
        assert [r.status for r in results] == [RunStatus.CANCELLED] * 3
        assert [r.steps_applied for r in results] == [3, 0, 0]

    @pytest.mark.asyncio
    async def test_unresolvable_handle_propagates(self):
        runner, _ = make_runner(_NoGuardianChain)
        with pytest.raises(UnresolvableHandleError):
            await runner.run(1)

    @pytest.mark.asyncio
    async def test_generator_failure_propagates(self):
        def broken(seed: int, config: GeneratorConfig) -> GeneratedRun:
            raise RuntimeError("out of entropy")

        runner, _ = make_runner(generator=broken)
        with pytest.raises(GeneratorError):
            await runner.run(1)

    @pytest.mark.asyncio
    async def test_run_many_keeps_seed_order(self):
        config = LockstepConfig(
            generator=GeneratorConfig(max_length=8),
            runner=RunnerConfig(concurrency=2),
        )
        runner, chains = make_runner(generator=DaoGenerator(), config=config)
        results = await runner.run_many([3, 1, 2])
        assert [r.seed for r in results] == [3, 1, 2]
        assert len({r.run_id for r in results}) == 3
        assert all(r.status == RunStatus.COMPLETED for r in results)
        assert len(chains) == 3
