"""
lockstep — DAO Reference Model

Pure in-memory semantics of the DAO contract. Operates on the ModelState the
executor hands it: ``state.storage`` is a DaoStorage, ``state.entities`` holds
the governance token (storage: list[TokenTransfer]) and the view consumer
(storage: list[RegistryView]).

Check order inside each entrypoint is part of the semantics: the first
failing precondition decides the ErrorCode.
"""

from __future__ import annotations

from typing import assert_never

from lockstep.dao.types import DaoStorage, FrozenBalance, Proposal, RegistryView, TokenTransfer
from lockstep.engine.errors import MissingEntityError, ModelRejection
from lockstep.engine.model import ReferenceModel
from lockstep.engine.types import (
    AcceptOwnership,
    CustomCall,
    DefaultCall,
    DropProposal,
    EntityState,
    ErrorCode,
    Flush,
    Freeze,
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

_ALLOWED_METADATA = {
    "base": (TextProposal,),
    "registry": (TextProposal, RegistryUpdate),
    "treasury": (TextProposal, TreasuryTransfer),
}


def _require(condition: bool, code: ErrorCode) -> None:
    if not condition:
        raise ModelRejection(code)


def _entity(state: ModelState, handle: str) -> EntityState:
    entity = state.entities.get(handle)
    if entity is None:
        raise MissingEntityError(f"model has no contract {handle!r}")
    return entity


class DaoModel(ReferenceModel):
    """Reference semantics for every DAO operation."""

    def apply(self, state: ModelState, op: OperationBase) -> None:
        storage: DaoStorage = state.storage

        if op.xtz > 0:
            _require(op.value_allowed, ErrorCode.FORBIDDEN_XTZ)
            state.balance += op.xtz

        match op:
            case Propose():
                self._propose(state, storage, op)
            case Vote():
                self._vote(state, storage, op)
            case Freeze():
                self._move_tokens(state, storage, op.sender, op.tokens, freeze=True)
            case Unfreeze():
                self._move_tokens(state, storage, op.sender, op.tokens, freeze=False)
            case Flush():
                self._flush(state, storage, op.limit)
            case DropProposal():
                self._drop(storage, op)
            case TransferContractTokens():
                _require(op.sender == storage.admin, ErrorCode.NOT_ADMIN)
                _entity(state, op.contract).storage.append(
                    TokenTransfer(source=op.from_, destination=op.to, amount=op.tokens)
                )
            case TransferOwnership():
                _require(op.sender == storage.admin, ErrorCode.NOT_ADMIN)
                storage.pending_owner = op.new_owner
            case AcceptOwnership():
                _require(
                    storage.pending_owner is not None and op.sender == storage.pending_owner,
                    ErrorCode.NOT_PENDING_ADMIN,
                )
                storage.admin = op.sender
                storage.pending_owner = None
            case UpdateDelegate():
                self._update_delegate(storage, op)
            case UnstakeVote():
                self._unstake_vote(storage, op)
            case DefaultCall():
                pass
            case CustomCall():
                self._custom(state, storage, op)
            case _:
                assert_never(op)

    # ── Entrypoints ────────────────────────────────────────────────────────────

    def _propose(self, state: ModelState, storage: DaoStorage, op: Propose) -> None:
        cfg = storage.config
        _require(len(storage.proposals) < cfg.max_proposals, ErrorCode.MAX_PROPOSALS_REACHED)
        _require(op.frozen_tokens >= cfg.min_proposal_stake, ErrorCode.FAIL_PROPOSAL_CHECK)
        _require(
            isinstance(op.metadata, _ALLOWED_METADATA[cfg.variant]),
            ErrorCode.FAIL_PROPOSAL_CHECK,
        )
        if isinstance(op.metadata, TreasuryTransfer):
            _require(op.metadata.amount > 0, ErrorCode.FAIL_PROPOSAL_CHECK)

        frozen = storage.frozen.get(op.sender, FrozenBalance())
        _require(frozen.available >= op.frozen_tokens, ErrorCode.NOT_ENOUGH_FROZEN_TOKENS)
        frozen.staked += op.frozen_tokens
        self._store_frozen(storage, op.sender, frozen)

        storage.proposals[storage.proposal_counter] = Proposal(
            proposer=op.sender,
            stake=op.frozen_tokens,
            start_level=state.level,
            metadata=op.metadata,
        )
        storage.proposal_counter += 1

    def _vote(self, state: ModelState, storage: DaoStorage, op: Vote) -> None:
        _require(
            op.sender == op.owner or op.sender in storage.delegates.get(op.owner, []),
            ErrorCode.NOT_DELEGATE,
        )
        proposal = storage.proposals.get(op.proposal_key)
        if proposal is None:
            raise ModelRejection(ErrorCode.PROPOSAL_NOT_EXIST)
        _require(
            state.level < proposal.start_level + storage.config.voting_period,
            ErrorCode.VOTING_STAGE_OVER,
        )
        frozen = storage.frozen.get(op.owner, FrozenBalance())
        _require(frozen.available >= op.tokens, ErrorCode.NOT_ENOUGH_FROZEN_TOKENS)

        frozen.staked += op.tokens
        storage.frozen[op.owner] = frozen
        if op.upvote:
            proposal.upvotes += op.tokens
        else:
            proposal.downvotes += op.tokens
        proposal.voters[op.owner] = proposal.voters.get(op.owner, 0) + op.tokens
        staked = storage.staked_votes.setdefault(op.owner, {})
        staked[op.proposal_key] = staked.get(op.proposal_key, 0) + op.tokens

    def _move_tokens(
        self, state: ModelState, storage: DaoStorage, owner: str, tokens: int, *, freeze: bool
    ) -> None:
        frozen = storage.frozen.get(owner, FrozenBalance())
        if freeze:
            frozen.total += tokens
            source, destination = owner, state.self_address
        else:
            _require(frozen.available >= tokens, ErrorCode.NOT_ENOUGH_FROZEN_TOKENS)
            frozen.total -= tokens
            source, destination = state.self_address, owner

        _entity(state, storage.governance_token).storage.append(
            TokenTransfer(source=source, destination=destination, amount=tokens)
        )
        self._store_frozen(storage, owner, frozen)

    def _flush(self, state: ModelState, storage: DaoStorage, limit: int) -> None:
        period = storage.config.voting_period
        expired = [
            key
            for key in sorted(storage.proposals)
            if state.level >= storage.proposals[key].start_level + period
        ][: max(limit, 0)]
        _require(bool(expired), ErrorCode.EMPTY_FLUSH)

        for key in expired:
            proposal = storage.proposals.pop(key)
            accepted = (
                proposal.upvotes >= storage.config.quorum
                and proposal.upvotes > proposal.downvotes
            )
            self._release_stake(storage, proposal, slash=not accepted)
            if accepted:
                self._execute(state, storage, proposal)

    def _drop(self, storage: DaoStorage, op: DropProposal) -> None:
        proposal = storage.proposals.get(op.proposal_key)
        if proposal is None:
            raise ModelRejection(ErrorCode.PROPOSAL_NOT_EXIST)
        _require(
            op.sender in (proposal.proposer, storage.guardian),
            ErrorCode.DROP_PROPOSAL_CONDITION_NOT_MET,
        )
        del storage.proposals[op.proposal_key]
        self._release_stake(storage, proposal, slash=False)

    def _unstake_vote(self, storage: DaoStorage, op: UnstakeVote) -> None:
        staked = storage.staked_votes.get(op.sender, {})
        for key in op.proposal_keys:
            # Live proposals keep their votes until flushed or dropped
            _require(key not in storage.proposals, ErrorCode.UNSTAKE_INVALID_PROPOSAL)
            _require(key in staked, ErrorCode.VOTER_DOES_NOT_EXIST)
            storage.frozen[op.sender].staked -= staked.pop(key)
        if not staked:
            storage.staked_votes.pop(op.sender, None)

    def _update_delegate(self, storage: DaoStorage, op: UpdateDelegate) -> None:
        current = set(storage.delegates.get(op.sender, []))
        if op.enable:
            current.add(op.delegate)
        else:
            current.discard(op.delegate)
        if current:
            storage.delegates[op.sender] = sorted(current)
        else:
            storage.delegates.pop(op.sender, None)

    def _custom(self, state: ModelState, storage: DaoStorage, op: CustomCall) -> None:
        # Only the registry variant defines custom entrypoints
        if storage.config.variant != "registry":
            return
        match op.param:
            case LookupRegistry(key=key, callback=callback):
                _entity(state, callback).storage.append(
                    RegistryView(key=key, value=storage.registry.get(key))
                )
            case UpdateReceivers(add=add, receivers=receivers):
                _require(op.sender == storage.admin, ErrorCode.NOT_ADMIN)
                current = set(storage.receivers)
                if add:
                    current.update(receivers)
                else:
                    current.difference_update(receivers)
                storage.receivers = sorted(current)
            case _:
                assert_never(op.param)

    # ── Settlement ─────────────────────────────────────────────────────────────

    def _release_stake(self, storage: DaoStorage, proposal: Proposal, *, slash: bool) -> None:
        frozen = storage.frozen.get(proposal.proposer, FrozenBalance())
        frozen.staked -= proposal.stake
        if slash:
            frozen.total -= proposal.stake
        self._store_frozen(storage, proposal.proposer, frozen)

    def _execute(self, state: ModelState, storage: DaoStorage, proposal: Proposal) -> None:
        match proposal.metadata:
            case TreasuryTransfer(to=to, amount=amount):
                # Insufficient treasury: the accepted transfer is skipped
                if amount > state.balance:
                    return
                state.balance -= amount
                if to in state.entities:
                    state.entities[to].balance += amount
            case RegistryUpdate(key=key, value=value):
                if value is None:
                    storage.registry.pop(key, None)
                else:
                    storage.registry[key] = value
            case TextProposal():
                pass
            case _:
                assert_never(proposal.metadata)

    @staticmethod
    def _store_frozen(storage: DaoStorage, owner: str, frozen: FrozenBalance) -> None:
        if frozen.total == 0:
            storage.frozen.pop(owner, None)
        else:
            storage.frozen[owner] = frozen
