"""
lockstep — Comparator / Divergence Reporter

Field-by-field structural equality between the model's and the system's
observables for one step. Checks run in a fixed order:

  1. primary outcome   (storage on success, ErrorCode on failure)
  2. primary balance
  3. storage of every tracked entity, in environment order
  4. balance of every tracked entity, in environment order

Each check is public so a test can target one failure mode at a time. The
first failing check wins and later checks are not evaluated, which keeps a
report single-cause.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from lockstep.engine.errors import MissingEntityError
from lockstep.engine.types import (
    CheckName,
    DivergenceReport,
    EntitySnapshot,
    Failure,
    ObservableSet,
    OperationBase,
    Success,
)


def render_value(value: Any) -> str:
    """Stable text rendering of an observable value."""
    match value:
        case Failure(code=code):
            return f"error {code.name} ({int(code)})"
        case Success(storage=storage):
            return render_value(storage)
        case Decimal():
            return str(value)
        case BaseModel():
            data = value.model_dump(mode="json", by_alias=True)
            return json.dumps(data, indent=2, sort_keys=True)
        case _:
            return json.dumps(to_jsonable_python(value), indent=2, sort_keys=True)


class Comparator:
    """
    Compares two ObservableSets for the tracked entities of one run.

    ``roles`` maps an entity handle to the name used in report labels,
    e.g. {"KT1gov": "governance_token"}.
    """

    def __init__(self, tracked: tuple[str, ...], roles: dict[str, str] | None = None) -> None:
        self._tracked = tracked
        self._roles = roles or {}

    @property
    def tracked(self) -> tuple[str, ...]:
        return self._tracked

    def compare(
        self,
        step: int,
        op: OperationBase,
        model: ObservableSet,
        system: ObservableSet,
    ) -> DivergenceReport | None:
        report = self.check_primary_outcome(step, op, model, system)
        if report is None:
            report = self.check_primary_balance(step, op, model, system)
        for handle in self._tracked:
            if report is not None:
                break
            report = self.check_entity_storage(step, op, model, system, handle)
        for handle in self._tracked:
            if report is not None:
                break
            report = self.check_entity_balance(step, op, model, system, handle)
        return report

    # ── Individual checks ──────────────────────────────────────────────────────

    def check_primary_outcome(
        self, step: int, op: OperationBase, model: ObservableSet, system: ObservableSet
    ) -> DivergenceReport | None:
        if model.primary == system.primary:
            return None
        return self._report(
            step, op, CheckName.PRIMARY_OUTCOME, "primary", "storage",
            model.primary, system.primary,
        )

    def check_primary_balance(
        self, step: int, op: OperationBase, model: ObservableSet, system: ObservableSet
    ) -> DivergenceReport | None:
        if model.primary_balance == system.primary_balance:
            return None
        return self._report(
            step, op, CheckName.PRIMARY_BALANCE, "primary_balance", "contract balance",
            model.primary_balance, system.primary_balance,
        )

    def check_entity_storage(
        self,
        step: int,
        op: OperationBase,
        model: ObservableSet,
        system: ObservableSet,
        handle: str,
    ) -> DivergenceReport | None:
        m, s = self._entity(model, handle, "model"), self._entity(system, handle, "system")
        if m.storage == s.storage:
            return None
        return self._report(
            step, op, CheckName.ENTITY_STORAGE, f"entities[{handle}].storage",
            f"{self._role(handle)} storage", m.storage, s.storage,
        )

    def check_entity_balance(
        self,
        step: int,
        op: OperationBase,
        model: ObservableSet,
        system: ObservableSet,
        handle: str,
    ) -> DivergenceReport | None:
        m, s = self._entity(model, handle, "model"), self._entity(system, handle, "system")
        if m.balance == s.balance:
            return None
        return self._report(
            step, op, CheckName.ENTITY_BALANCE, f"entities[{handle}].balance",
            f"{self._role(handle)} balance", m.balance, s.balance,
        )

    # ── Internal ───────────────────────────────────────────────────────────────

    def _role(self, handle: str) -> str:
        return self._roles.get(handle, handle)

    @staticmethod
    def _entity(observables: ObservableSet, handle: str, side: str) -> EntitySnapshot:
        snapshot = observables.entities.get(handle)
        if snapshot is None:
            raise MissingEntityError(f"{side} observables have no entity {handle!r}")
        return snapshot

    @staticmethod
    def _report(
        step: int,
        op: OperationBase,
        check: CheckName,
        field: str,
        label: str,
        model_value: Any,
        system_value: Any,
    ) -> DivergenceReport:
        return DivergenceReport(
            step=step,
            operation=op,
            check=check,
            field=field,
            label=label,
            model_value=render_value(model_value),
            system_value=render_value(system_value),
        )
