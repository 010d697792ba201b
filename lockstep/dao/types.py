"""
lockstep — DAO Domain Types

Decoded storage of the DAO contract and of the auxiliary contracts the DAO
talks to. Both the reference model and the emulated chain report storage in
these shapes so the comparator can check them structurally.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from lockstep.engine.types import ProposalMetadata
from lockstep.primitives.common import FrozenModel, LockstepBaseModel

DaoVariant = Literal["base", "registry", "treasury"]


class DaoConfig(LockstepBaseModel):
    variant: DaoVariant = "base"
    # Levels a proposal accepts votes for, counted from its start level
    voting_period: int = 2
    # Upvoted tokens required for acceptance
    quorum: int = 2
    min_proposal_stake: int = 1
    max_proposals: int = 4


class FrozenBalance(LockstepBaseModel):
    total: int = 0
    staked: int = 0

    @property
    def available(self) -> int:
        return self.total - self.staked


class Proposal(LockstepBaseModel):
    proposer: str
    stake: int
    start_level: int
    upvotes: int = 0
    downvotes: int = 0
    # owner → tokens staked on this proposal
    voters: dict[str, int] = Field(default_factory=dict)
    metadata: ProposalMetadata


class DaoStorage(LockstepBaseModel):
    admin: str
    pending_owner: str | None = None
    guardian: str
    governance_token: str
    frozen: dict[str, FrozenBalance] = Field(default_factory=dict)
    # owner → sorted delegates
    delegates: dict[str, list[str]] = Field(default_factory=dict)
    proposals: dict[int, Proposal] = Field(default_factory=dict)
    # owner → proposal key → tokens still staked on it, released by unstake_vote
    staked_votes: dict[str, dict[int, int]] = Field(default_factory=dict)
    proposal_counter: int = 0
    registry: dict[str, str] = Field(default_factory=dict)
    receivers: list[str] = Field(default_factory=list)
    config: DaoConfig = Field(default_factory=DaoConfig)


class TokenTransfer(FrozenModel):
    """One transfer recorded by the governance-token contract."""

    source: str
    destination: str
    token_id: int = 0
    amount: int


class RegistryView(FrozenModel):
    """One (key, value) pair received by the view consumer."""

    key: str
    value: str | None = None

