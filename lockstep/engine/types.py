"""
lockstep — Engine Types

The vocabulary shared by both executors and the comparator.

Layer map
---------
  GeneratedRun ── Environment + [Operation] + initial ModelState
      ↓  per Operation
  ModelExecutor  → ObservableSet (model)
  SystemExecutor → SystemStep (raw failure | None, ObservableSet system)
      ↓  ErrorNormalizer
  Comparator     → DivergenceReport | None
      ↓
  RunResult      — completed | aborted | cancelled

Key concepts
------------
Operation        — closed discriminated union over every call kind; frozen
ErrorCode        — numerically tagged domain failures, shared by both sides
PrimaryOutcome   — Success(storage) | Failure(code)
ObservableSet    — everything compared after a step
ModelState       — the reference model's full state, owned by ModelExecutor
DivergenceReport — first mismatch, rendered as stable text
"""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import Field, TypeAdapter

from lockstep.engine.errors import DivergenceError, NormalizationFault
from lockstep.primitives.common import FrozenModel, LockstepBaseModel, new_id

# ── Enumerations ───────────────────────────────────────────────────────────────


class ErrorCode(enum.IntEnum):
    """
    Domain failure kinds. The integer tag is what a system emits on failure.
    """

    NOT_ADMIN = 100
    NOT_PENDING_ADMIN = 101
    NOT_DELEGATE = 102
    NOT_ENOUGH_FROZEN_TOKENS = 103
    NOT_ENOUGH_STAKED_TOKENS = 104
    PROPOSAL_NOT_EXIST = 105
    VOTING_STAGE_OVER = 106
    EMPTY_FLUSH = 107
    DROP_PROPOSAL_CONDITION_NOT_MET = 108
    FORBIDDEN_XTZ = 109
    FAIL_PROPOSAL_CHECK = 110
    MAX_PROPOSALS_REACHED = 111
    NOT_ENOUGH_BALANCE = 112
    UNSTAKE_INVALID_PROPOSAL = 113
    VOTER_DOES_NOT_EXIST = 114
    TIMEOUT = 900


class CheckName(enum.StrEnum):
    PRIMARY_OUTCOME = "primary_outcome"
    PRIMARY_BALANCE = "primary_balance"
    ENTITY_STORAGE = "entity_storage"
    ENTITY_BALANCE = "entity_balance"


class RunStatus(enum.StrEnum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


# ── Proposal metadata ──────────────────────────────────────────────────────────


class TreasuryTransfer(FrozenModel):
    """Move value from the primary contract to ``to`` when accepted."""

    kind: Literal["treasury_transfer"] = "treasury_transfer"
    to: str
    amount: Decimal


class RegistryUpdate(FrozenModel):
    """Set (or delete, when value is None) a registry key when accepted."""

    kind: Literal["registry_update"] = "registry_update"
    key: str
    value: str | None = None


class TextProposal(FrozenModel):
    kind: Literal["text"] = "text"
    text: str = ""


ProposalMetadata = Annotated[
    Union[TreasuryTransfer, RegistryUpdate, TextProposal],
    Field(discriminator="kind"),
]


# ── Custom entrypoint sub-variants ─────────────────────────────────────────────


class LookupRegistry(FrozenModel):
    """Post (key, registry[key]) to the callback entity's storage."""

    kind: Literal["lookup_registry"] = "lookup_registry"
    key: str
    callback: str


class UpdateReceivers(FrozenModel):
    kind: Literal["update_receivers"] = "update_receivers"
    add: bool = True
    receivers: tuple[str, ...] = ()


CustomParam = Annotated[
    Union[LookupRegistry, UpdateReceivers],
    Field(discriminator="kind"),
]


# ── Operations ─────────────────────────────────────────────────────────────────


class OperationBase(FrozenModel):
    """
    Fields shared by every operation.

    kind     — discriminator, one per call kind
    sender   — identity submitting the call
    advance  — levels to move the shared clock forward before execution
    xtz      — value attached to the call
    """

    kind: str
    sender: str
    advance: int | None = Field(default=None, ge=0)
    xtz: Decimal = Field(default=Decimal("0"), ge=0)

    # Whether a non-zero xtz is accepted; forbidden calls fail FORBIDDEN_XTZ
    value_allowed: ClassVar[bool] = False


class Propose(OperationBase):
    kind: Literal["propose"] = "propose"
    frozen_tokens: int = Field(ge=0)
    metadata: ProposalMetadata

    value_allowed: ClassVar[bool] = True


class Vote(OperationBase):
    kind: Literal["vote"] = "vote"
    # Owner of the frozen tokens being voted; sender must be owner or delegate
    owner: str
    proposal_key: int
    upvote: bool = True
    tokens: int = Field(default=1, ge=1)


class Freeze(OperationBase):
    kind: Literal["freeze"] = "freeze"
    tokens: int = Field(ge=1)


class Unfreeze(OperationBase):
    kind: Literal["unfreeze"] = "unfreeze"
    tokens: int = Field(ge=1)


class Flush(OperationBase):
    kind: Literal["flush"] = "flush"
    limit: int = 1


class DropProposal(OperationBase):
    kind: Literal["drop_proposal"] = "drop_proposal"
    proposal_key: int


class TransferContractTokens(OperationBase):
    kind: Literal["transfer_contract_tokens"] = "transfer_contract_tokens"
    contract: str
    from_: str = Field(alias="from")
    to: str
    tokens: int

    value_allowed: ClassVar[bool] = True


class TransferOwnership(OperationBase):
    kind: Literal["transfer_ownership"] = "transfer_ownership"
    new_owner: str

    value_allowed: ClassVar[bool] = True


class AcceptOwnership(OperationBase):
    kind: Literal["accept_ownership"] = "accept_ownership"

    value_allowed: ClassVar[bool] = True


class UnstakeVote(OperationBase):
    """Release the sender's vote stakes on proposals that are no longer live."""

    kind: Literal["unstake_vote"] = "unstake_vote"
    proposal_keys: tuple[int, ...] = Field(min_length=1)


class UpdateDelegate(OperationBase):
    kind: Literal["update_delegate"] = "update_delegate"
    delegate: str
    enable: bool = True


class DefaultCall(OperationBase):
    """Plain value transfer to the primary contract."""

    kind: Literal["default"] = "default"

    value_allowed: ClassVar[bool] = True


class CustomCall(OperationBase):
    kind: Literal["custom"] = "custom"
    param: CustomParam

    value_allowed: ClassVar[bool] = True


Operation = Annotated[
    Union[
        Propose,
        Vote,
        Freeze,
        Unfreeze,
        Flush,
        DropProposal,
        TransferContractTokens,
        TransferOwnership,
        AcceptOwnership,
        UpdateDelegate,
        UnstakeVote,
        DefaultCall,
        CustomCall,
    ],
    Field(discriminator="kind"),
]

OperationAdapter: TypeAdapter[Operation] = TypeAdapter(Operation)


def render_operation(op: OperationBase) -> str:
    """Stable JSON rendering of an operation, fields in declaration order."""
    return op.model_dump_json(indent=2, by_alias=True)


# ── Environment & generated run ────────────────────────────────────────────────


class Environment(FrozenModel):
    """
    Handles the generator referenced while building payloads.

    ``tracked`` lists the auxiliary entities whose storage and balance are
    compared after every step, in comparison order.
    """

    primary: str
    governance_token: str
    view_consumer: str
    guardian: str
    start_level: int = 0
    tracked: tuple[str, ...] = ()

    @property
    def handles(self) -> dict[str, str]:
        return {
            "primary": self.primary,
            "governance_token": self.governance_token,
            "view_consumer": self.view_consumer,
            "guardian": self.guardian,
        }


class EntityState(LockstepBaseModel):
    """One auxiliary entity inside the model: its storage and its balance."""

    storage: Any = None
    balance: Decimal = Decimal("0")


class ModelState(LockstepBaseModel):
    """The reference model's complete state."""

    storage: Any
    balance: Decimal = Decimal("0")
    level: int = 0
    self_address: str = ""
    entities: dict[str, EntityState] = Field(default_factory=dict)


class GeneratedRun(LockstepBaseModel):
    seed: int
    environment: Environment
    operations: list[Operation] = Field(default_factory=list)
    initial_state: ModelState


# ── Outcomes & observables ─────────────────────────────────────────────────────


class Success(FrozenModel):
    kind: Literal["success"] = "success"
    storage: Any


class Failure(FrozenModel):
    kind: Literal["failure"] = "failure"
    code: ErrorCode


PrimaryOutcome = Annotated[Union[Success, Failure], Field(discriminator="kind")]


class EntitySnapshot(FrozenModel):
    storage: Any = None
    balance: Decimal = Decimal("0")


class ObservableSet(LockstepBaseModel):
    """The values compared after every step, from one side."""

    primary: PrimaryOutcome
    primary_balance: Decimal
    entities: dict[str, EntitySnapshot] = Field(default_factory=dict)


class SystemStep(LockstepBaseModel):
    """What the system executor saw for one operation, before normalization."""

    raw_failure: Any = None
    failed: bool = False
    storage: Any = None
    primary_balance: Decimal = Decimal("0")
    entities: dict[str, EntitySnapshot] = Field(default_factory=dict)


# ── Reports ────────────────────────────────────────────────────────────────────


class DivergenceReport(FrozenModel):
    """
    The first mismatch of a run. Built only at failure time.

    step is 1-based; field is the ObservableSet path that disagreed.
    """

    step: int
    operation: Operation
    check: CheckName
    field: str
    label: str
    model_value: str
    system_value: str

    def render(self) -> str:
        return "\n".join(
            [
                f"━━ Error: model and system {self.label} are different ━━",
                f"* Step {self.step}, call with:",
                render_operation(self.operation),
                f"━━ Model {self.label} ━━",
                self.model_value,
                f"━━ System {self.label} ━━",
                self.system_value,
            ]
        )


class RunResult(LockstepBaseModel):
    run_id: str = Field(default_factory=new_id)
    seed: int
    status: RunStatus
    steps_applied: int = 0
    total_operations: int = 0
    report: DivergenceReport | None = None
    fault: str | None = None
    duration_ms: int = 0
    # Model state after the last applied step, kept for diagnostics
    model_state: ModelState | None = None

    @property
    def passed(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def raise_for_divergence(self) -> None:
        """Raise if the run diverged or hit a normalization fault."""
        if self.report is not None:
            raise DivergenceError(self.report)
        if self.fault is not None:
            raise NormalizationFault(self.fault, reason="run aborted")
