"""
lockstep -- Engine Error Hierarchy

All exceptions raised within a differential run.

Namespace: lockstep.engine.errors

Severity guide:
  DivergenceError     EXPECTED -- the two implementations disagreed; assertable
  NormalizationFault  FATAL    -- a raw failure shape the normalizer cannot map
  CollaboratorFault   FATAL    -- the run's premises are unmet (missing entity,
                                  unresolvable handle, generator failure)

ModelRejection never leaves the reference model executor: it is how a model
signals a domain failure, and the executor turns it into a Failure outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lockstep.engine.types import DivergenceReport, ErrorCode


class LockstepError(RuntimeError):
    """Base for all differential-run errors."""


class DivergenceError(LockstepError, AssertionError):
    """
    The model and the system produced different observables for one step.

    Subclasses AssertionError so test frameworks report it as a failed
    assertion rather than an error.
    """

    def __init__(self, report: DivergenceReport) -> None:
        super().__init__(report.render())
        self.report = report


class NormalizationFault(LockstepError):
    """
    The system failed with a payload the normalizer has no rule for.

    Never coerced into a default ErrorCode: the normalizer is out of date
    with the system's error encoding and every later comparison is suspect.
    """

    def __init__(self, raw: Any, reason: str = "unexpected failure shape") -> None:
        super().__init__(f"{reason}: {raw!r}")
        self.raw = raw


class CollaboratorFault(LockstepError):
    """A collaborator broke the contract the engine relies on."""


class MissingEntityError(CollaboratorFault):
    """A tracked auxiliary entity is absent from one side's observables."""


class UnresolvableHandleError(CollaboratorFault):
    """An environment handle could not be resolved by the system client."""


class GeneratorError(CollaboratorFault):
    """The sequence generator failed or returned a malformed run."""


class UnsupportedOperationError(CollaboratorFault):
    """A custom sub-variant reached a dispatcher configured to refuse it."""


class ModelRejection(Exception):
    """Raised inside a reference model when an operation's preconditions fail."""

    def __init__(self, code: ErrorCode) -> None:
        super().__init__(code.name)
        self.code = code


class SystemFailure(Exception):
    """
    Raised by a SystemClient when the system rejected a submission.

    ``raw`` is the system's own failure payload, untouched; the error
    normalizer decides what it means.
    """

    def __init__(self, raw: Any) -> None:
        super().__init__(repr(raw))
        self.raw = raw
