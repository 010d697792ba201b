"""
lockstep — DAO Sequence Generator

Draws a random but reproducible call sequence for the DAO. The generator
does not simulate the contract: it only keeps a rough count of proposals so
vote/drop keys usually hit something, and leaves every business rule to the
executors. Failing calls are as useful as succeeding ones.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import numpy as np

from lockstep.dao.types import DaoConfig, DaoStorage
from lockstep.engine.generator import SequenceGenerator
from lockstep.engine.types import (
    AcceptOwnership,
    CustomCall,
    DefaultCall,
    DropProposal,
    EntityState,
    Environment,
    Flush,
    Freeze,
    GeneratedRun,
    LookupRegistry,
    ModelState,
    OperationBase,
    Propose,
    RegistryUpdate,
    TextProposal,
    TransferContractTokens,
    TransferOwnership,
    TreasuryTransfer,
    Unfreeze,
    UnstakeVote,
    UpdateDelegate,
    UpdateReceivers,
    Vote,
)

if TYPE_CHECKING:
    from lockstep.config import GeneratorConfig

DAO = "KT1Dao"
GOVERNANCE_TOKEN = "KT1GovToken"
VIEW_CONSUMER = "KT1ViewConsumer"
GUARDIAN = "KT1Guardian"
SENDERS = ("tz1alice", "tz1bob", "tz1carol", "tz1dave")
REGISTRY_KEYS = ("alpha", "beta", "gamma")

_OTHER_KINDS = (
    "vote",
    "freeze",
    "unfreeze",
    "flush",
    "drop_proposal",
    "transfer_contract_tokens",
    "transfer_ownership",
    "accept_ownership",
    "update_delegate",
    "unstake_vote",
    "default",
)


def initial_state(config: GeneratorConfig) -> ModelState:
    """The DAO as originated: no frozen tokens, no proposals, admin = first sender."""
    storage = DaoStorage(
        admin=SENDERS[0],
        guardian=GUARDIAN,
        governance_token=GOVERNANCE_TOKEN,
        config=DaoConfig(variant=config.variant),
    )
    return ModelState(
        storage=storage,
        balance=config.initial_balance,
        level=config.start_level,
        self_address=DAO,
        entities={
            GOVERNANCE_TOKEN: EntityState(storage=[]),
            VIEW_CONSUMER: EntityState(storage=[]),
        },
    )


def environment(config: GeneratorConfig) -> Environment:
    return Environment(
        primary=DAO,
        governance_token=GOVERNANCE_TOKEN,
        view_consumer=VIEW_CONSUMER,
        guardian=GUARDIAN,
        start_level=config.start_level,
        tracked=(GOVERNANCE_TOKEN, VIEW_CONSUMER),
    )


class DaoGenerator(SequenceGenerator):
    """Seeded DAO call generator. Same (seed, config) → same run."""

    def generate(self, seed: int, config: GeneratorConfig) -> GeneratedRun:
        rng = np.random.default_rng(seed)
        kinds = list(_OTHER_KINDS)
        if config.variant == "registry":
            kinds.append("custom")

        # propose gets proposal_weight, the rest share what is left evenly
        other = (1.0 - config.proposal_weight) / len(kinds)
        weights = np.array([config.proposal_weight] + [other] * len(kinds))
        choices = ["propose", *kinds]

        length = int(rng.integers(1, config.max_length + 1))
        proposals = 0
        operations: list[OperationBase] = []
        for _ in range(length):
            kind = choices[int(rng.choice(len(choices), p=weights / weights.sum()))]
            op = self._draw(rng, kind, config, proposals)
            if kind == "propose":
                proposals += 1
            operations.append(op)

        return GeneratedRun(
            seed=seed,
            environment=environment(config),
            operations=operations,
            initial_state=initial_state(config),
        )

    # ── Draws ──────────────────────────────────────────────────────────────────

    def _draw(
        self, rng: np.random.Generator, kind: str, config: GeneratorConfig, proposals: int
    ) -> OperationBase:
        sender = self._sender(rng)
        advance = int(rng.integers(1, 4)) if rng.random() < 0.3 else None
        # Occasionally attach value, including to calls that forbid it
        xtz = Decimal(int(rng.integers(1, 5))) if rng.random() < 0.1 else Decimal("0")
        key = int(rng.integers(0, proposals + 1))
        tokens = int(rng.integers(1, 6))
        common = {"sender": sender, "advance": advance, "xtz": xtz}

        match kind:
            case "propose":
                return Propose(
                    **common,
                    frozen_tokens=int(rng.integers(0, 4)),
                    metadata=self._metadata(rng, config),
                )
            case "vote":
                owner = self._sender(rng) if rng.random() < 0.3 else sender
                return Vote(**common, owner=owner, proposal_key=key, upvote=bool(rng.random() < 0.7), tokens=tokens)
            case "freeze":
                return Freeze(**common, tokens=tokens)
            case "unfreeze":
                return Unfreeze(**common, tokens=tokens)
            case "flush":
                return Flush(**common, limit=int(rng.integers(0, 4)))
            case "drop_proposal":
                if rng.random() < 0.2:
                    common["sender"] = GUARDIAN
                return DropProposal(**common, proposal_key=key)
            case "transfer_contract_tokens":
                return TransferContractTokens(
                    **common,
                    contract=GOVERNANCE_TOKEN,
                    **{"from": DAO},
                    to=self._sender(rng),
                    tokens=tokens,
                )
            case "transfer_ownership":
                return TransferOwnership(**common, new_owner=self._sender(rng))
            case "accept_ownership":
                return AcceptOwnership(**common)
            case "update_delegate":
                return UpdateDelegate(**common, delegate=self._sender(rng), enable=bool(rng.random() < 0.8))
            case "unstake_vote":
                count = int(rng.integers(1, 3))
                keys = tuple(int(k) for k in rng.integers(0, proposals + 1, size=count))
                return UnstakeVote(**common, proposal_keys=keys)
            case "default":
                return DefaultCall(**common)
            case "custom":
                common["xtz"] = Decimal("0")
                if rng.random() < 0.7:
                    return CustomCall(
                        **common,
                        param=LookupRegistry(key=self._registry_key(rng), callback=VIEW_CONSUMER),
                    )
                return CustomCall(
                    **common,
                    param=UpdateReceivers(add=bool(rng.random() < 0.7), receivers=(self._sender(rng),)),
                )
        raise ValueError(f"unknown operation kind {kind!r}")

    def _metadata(
        self, rng: np.random.Generator, config: GeneratorConfig
    ) -> TextProposal | RegistryUpdate | TreasuryTransfer:
        roll = rng.random()
        if roll < 0.2:
            return TextProposal(text=f"proposal-{int(rng.integers(0, 1000))}")
        if config.variant == "registry" or (config.variant == "base" and roll < 0.6):
            value = None if rng.random() < 0.2 else f"v{int(rng.integers(0, 100))}"
            return RegistryUpdate(key=self._registry_key(rng), value=value)
        to = GOVERNANCE_TOKEN if rng.random() < 0.6 else self._sender(rng)
        return TreasuryTransfer(to=to, amount=Decimal(int(rng.integers(0, 300))))

    @staticmethod
    def _sender(rng: np.random.Generator) -> str:
        return SENDERS[int(rng.integers(0, len(SENDERS)))]

    @staticmethod
    def _registry_key(rng: np.random.Generator) -> str:
        return REGISTRY_KEYS[int(rng.integers(0, len(REGISTRY_KEYS)))]
