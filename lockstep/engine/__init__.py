"""
lockstep — Differential Engine

Generate → dual-apply → compare → stop at the first divergence.

Public API:
  DifferentialRunner          — call-loop orchestrator (run, run_many, cancel)
  GeneratorAdapter            — uniform front for domain generators
  SequenceGenerator           — generator strategy base class
  ModelExecutor               — pure reference-model step
  ReferenceModel              — model semantics base class
  SystemExecutor              — system-under-test step
  SystemClient                — transport to one system instance
  CustomEntrypointDispatcher  — per-domain custom sub-variant submission
  ErrorNormalizer             — raw system failure → ErrorCode
  Comparator                  — ordered structural checks → DivergenceReport
"""

from lockstep.engine.comparator import Comparator, render_value
from lockstep.engine.errors import (
    CollaboratorFault,
    DivergenceError,
    GeneratorError,
    LockstepError,
    MissingEntityError,
    ModelRejection,
    NormalizationFault,
    SystemFailure,
    UnresolvableHandleError,
    UnsupportedOperationError,
)
from lockstep.engine.generator import GeneratorAdapter, SequenceGenerator
from lockstep.engine.model import ModelExecutor, ReferenceModel
from lockstep.engine.normalizer import ErrorNormalizer, SystemTimeout
from lockstep.engine.orchestrator import DifferentialRunner
from lockstep.engine.system import (
    CustomEntrypointDispatcher,
    NoOpDispatcher,
    SystemClient,
    SystemExecutor,
)
from lockstep.engine.types import (
    CheckName,
    DivergenceReport,
    Environment,
    ErrorCode,
    GeneratedRun,
    ModelState,
    ObservableSet,
    Operation,
    RunResult,
    RunStatus,
)

__all__ = [
    "CheckName",
    "CollaboratorFault",
    "Comparator",
    "CustomEntrypointDispatcher",
    "DifferentialRunner",
    "DivergenceError",
    "DivergenceReport",
    "Environment",
    "ErrorCode",
    "ErrorNormalizer",
    "GeneratedRun",
    "GeneratorAdapter",
    "GeneratorError",
    "LockstepError",
    "MissingEntityError",
    "ModelExecutor",
    "ModelRejection",
    "ModelState",
    "NoOpDispatcher",
    "NormalizationFault",
    "ObservableSet",
    "Operation",
    "ReferenceModel",
    "RunResult",
    "RunStatus",
    "SequenceGenerator",
    "SystemClient",
    "SystemExecutor",
    "SystemFailure",
    "SystemTimeout",
    "UnresolvableHandleError",
    "UnsupportedOperationError",
    "render_value",
]
