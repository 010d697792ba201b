"""
lockstep — Reference Model Executor

Applies one operation to the reference model's state. Pure and synchronous:
the input state is never touched, the executor works on a copy and hands the
new state back.

Design rules for ReferenceModel implementations:
  - Mutate the state they are given; the executor owns copying
  - Signal a domain failure by raising ModelRejection(code)
  - No I/O
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

import structlog

from lockstep.engine.errors import MissingEntityError, ModelRejection
from lockstep.engine.types import (
    EntitySnapshot,
    Failure,
    ModelState,
    ObservableSet,
    OperationBase,
    PrimaryOutcome,
    Success,
)

logger = structlog.get_logger().bind(system="lockstep.model")

ApplyFn = Callable[[ModelState, OperationBase], None]


class ReferenceModel(ABC):
    """
    Strategy base class for domain model semantics.

    Every operation variant must have defined semantics: an operation whose
    preconditions fail raises ModelRejection, never anything else.
    """

    @abstractmethod
    def apply(self, state: ModelState, op: OperationBase) -> None:
        ...


class ModelExecutor:
    """Runs a ReferenceModel one operation at a time and snapshots the result."""

    def __init__(self, model: ReferenceModel | ApplyFn, tracked: tuple[str, ...]) -> None:
        self._apply: ApplyFn = model.apply if isinstance(model, ReferenceModel) else model
        self._tracked = tracked

    def apply(self, state: ModelState, op: OperationBase) -> tuple[ModelState, ObservableSet]:
        working = state.model_copy(deep=True)

        # The clock moves before the operation is evaluated and stays moved
        # even if the operation is rejected.
        if op.advance:
            working.level += op.advance

        checkpoint = working.model_copy(deep=True)
        primary: PrimaryOutcome
        try:
            self._apply(working, op)
            primary = Success(storage=working.storage)
        except ModelRejection as rejection:
            working = checkpoint
            primary = Failure(code=rejection.code)
            logger.debug("model_rejected", kind=op.kind, code=rejection.code.name)

        observed = working.model_copy(deep=True)
        if isinstance(primary, Success):
            primary = Success(storage=observed.storage)
        return working, self.snapshot(observed, primary)

    def snapshot(self, state: ModelState, primary: PrimaryOutcome) -> ObservableSet:
        entities: dict[str, EntitySnapshot] = {}
        for handle in self._tracked:
            entity = state.entities.get(handle)
            if entity is None:
                raise MissingEntityError(f"model state has no entity {handle!r}")
            entities[handle] = EntitySnapshot(storage=entity.storage, balance=entity.balance)
        return ObservableSet(
            primary=primary,
            primary_balance=state.balance,
            entities=entities,
        )
