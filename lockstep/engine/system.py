"""
lockstep — System-Under-Test Executor

Applies one operation to the real system through an injected SystemClient
and fetches the post-operation observables. May suspend on I/O.

Per step, in order:
  1. advance the shared clock (if the operation asks for it)
  2. fund the sender so the call itself can be paid for
  3. submit: plain transfer, named entrypoint, or custom dispatch
  4. fetch primary storage/balance and every tracked entity's storage/balance

Steps 3 and 4 form one logical unit compared against one model step.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Literal, assert_never

import structlog

from lockstep.engine.errors import (
    SystemFailure,
    UnresolvableHandleError,
    UnsupportedOperationError,
)
from lockstep.engine.normalizer import SystemTimeout
from lockstep.engine.types import (
    AcceptOwnership,
    CustomCall,
    DefaultCall,
    DropProposal,
    EntitySnapshot,
    Flush,
    Freeze,
    GeneratedRun,
    OperationBase,
    Propose,
    SystemStep,
    TransferContractTokens,
    TransferOwnership,
    Unfreeze,
    UnstakeVote,
    UpdateDelegate,
    Vote,
)

logger = structlog.get_logger().bind(system="lockstep.system")

_ENVELOPE_FIELDS = {"kind", "sender", "advance", "xtz"}


class SystemClient(ABC):
    """
    Transport to one system-under-test instance.

    Failures of submitted calls are raised as SystemFailure carrying the
    system's raw payload. Everything else a client raises is a collaborator
    fault and aborts the run.
    """

    @abstractmethod
    async def prepare(self, run: GeneratedRun) -> None:
        """Bring the system to the run's initial state (deploy, fund, set level)."""
        ...

    @abstractmethod
    async def resolve(self, handle: str) -> bool:
        """Whether ``handle`` names an entity this system knows."""
        ...

    @abstractmethod
    async def advance_level(self, levels: int) -> None:
        ...

    @abstractmethod
    async def fund(self, address: str, amount: Decimal) -> None:
        ...

    @abstractmethod
    async def transfer(self, sender: str, amount: Decimal) -> None:
        """Plain value transfer from ``sender`` to the primary contract."""
        ...

    @abstractmethod
    async def call(self, sender: str, entrypoint: str, argument: dict[str, Any], amount: Decimal) -> None:
        ...

    @abstractmethod
    async def get_storage(self, handle: str) -> Any:
        ...

    @abstractmethod
    async def get_balance(self, handle: str) -> Decimal:
        ...


class CustomEntrypointDispatcher(ABC):
    """
    Submits the custom sub-variants a domain defines.

    Resolved once per runner. ``dispatch`` returns False for a sub-variant
    it does not define; the executor's policy decides what that means.
    """

    @abstractmethod
    async def dispatch(self, client: SystemClient, op: CustomCall) -> bool:
        ...


class NoOpDispatcher(CustomEntrypointDispatcher):
    """Defines no custom sub-variants."""

    async def dispatch(self, client: SystemClient, op: CustomCall) -> bool:
        return False


def entrypoint_argument(op: OperationBase) -> dict[str, Any]:
    """The call payload: every operation field except the envelope."""
    return op.model_dump(mode="json", by_alias=True, exclude=_ENVELOPE_FIELDS)


class SystemExecutor:
    """Drives a SystemClient one operation at a time."""

    def __init__(
        self,
        client: SystemClient,
        primary: str,
        tracked: tuple[str, ...],
        *,
        dispatcher: CustomEntrypointDispatcher | None = None,
        funding_amount: Decimal = Decimal("0"),
        step_timeout_s: float | None = None,
        unsupported_custom: Literal["noop", "fail"] = "noop",
    ) -> None:
        self._client = client
        self._primary = primary
        self._tracked = tracked
        self._dispatcher = dispatcher or NoOpDispatcher()
        self._funding_amount = funding_amount
        self._timeout_s = step_timeout_s
        self._unsupported_custom = unsupported_custom

    async def prepare(self, run: GeneratedRun) -> None:
        await self._client.prepare(run)
        for role, handle in run.environment.handles.items():
            if not await self._client.resolve(handle):
                raise UnresolvableHandleError(f"{role} handle {handle!r} is unknown to the system")
        for handle in run.environment.tracked:
            if not await self._client.resolve(handle):
                raise UnresolvableHandleError(f"tracked handle {handle!r} is unknown to the system")

    async def apply(self, op: OperationBase) -> SystemStep:
        if op.advance:
            await self._client.advance_level(op.advance)

        raw_failure: Any = None
        failed = False
        try:
            if self._timeout_s is None:
                await self._submit(op)
            else:
                await asyncio.wait_for(self._submit(op), timeout=self._timeout_s)
        except SystemFailure as failure:
            raw_failure, failed = failure.raw, True
        except TimeoutError:
            logger.warning("submission_timeout", kind=op.kind, timeout_s=self._timeout_s)
            raw_failure, failed = SystemTimeout(self._timeout_s or 0.0), True

        entities: dict[str, EntitySnapshot] = {}
        for handle in self._tracked:
            entities[handle] = EntitySnapshot(
                storage=await self._client.get_storage(handle),
                balance=await self._client.get_balance(handle),
            )

        return SystemStep(
            raw_failure=raw_failure,
            failed=failed,
            storage=None if failed else await self._client.get_storage(self._primary),
            primary_balance=await self._client.get_balance(self._primary),
            entities=entities,
        )

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _submit(self, op: OperationBase) -> None:
        if self._funding_amount:
            await self._client.fund(op.sender, self._funding_amount)

        match op:
            case DefaultCall():
                await self._client.transfer(op.sender, op.xtz)
            case CustomCall():
                await self._dispatch_custom(op)
            case (
                Propose()
                | Vote()
                | Freeze()
                | Unfreeze()
                | Flush()
                | DropProposal()
                | TransferContractTokens()
                | TransferOwnership()
                | AcceptOwnership()
                | UpdateDelegate()
                | UnstakeVote()
            ):
                await self._client.call(op.sender, op.kind, entrypoint_argument(op), op.xtz)
            case _:
                assert_never(op)

    async def _dispatch_custom(self, op: CustomCall) -> None:
        if await self._dispatcher.dispatch(self._client, op):
            return
        if self._unsupported_custom == "fail":
            raise UnsupportedOperationError(
                f"custom sub-variant {op.param.kind!r} is not defined by "
                f"{type(self._dispatcher).__name__}"
            )
        logger.debug("custom_noop", sub_variant=op.param.kind)
