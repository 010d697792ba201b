"""
Unit tests for the EmulatedChain.

Pins the raw failure shapes the chain produces (the normalizer's input),
call atomicity, and decoding of contract storage.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from lockstep.config import GeneratorConfig
from lockstep.dao.emulator import EmulatedChain, RegistryDispatcher
from lockstep.dao.generator import DAO, GOVERNANCE_TOKEN, VIEW_CONSUMER, environment, initial_state
from lockstep.dao.types import DaoStorage, FrozenBalance, RegistryView, TokenTransfer
from lockstep.engine.errors import SystemFailure, UnresolvableHandleError, UnsupportedOperationError
from lockstep.engine.normalizer import ErrorNormalizer
from lockstep.engine.types import CustomCall, ErrorCode, GeneratedRun, LookupRegistry, UpdateReceivers

ALICE = "tz1alice"
BOB = "tz1bob"
ZERO = Decimal("0")


# ─── Fixtures ─────────────────────────────────────────────────────


async def make_chain(variant: str = "base", balance: str = "0", **frozen: int) -> EmulatedChain:
    config = GeneratorConfig(variant=variant, initial_balance=Decimal(balance))
    state = initial_state(config)
    state.storage.frozen = {f"tz1{name}": FrozenBalance(total=total) for name, total in frozen.items()}
    chain = EmulatedChain()
    await chain.prepare(GeneratedRun(seed=0, environment=environment(config), initial_state=state))
    return chain


async def raw_failure(chain: EmulatedChain, sender: str, entrypoint: str, arg: dict, amount=ZERO):
    with pytest.raises(SystemFailure) as exc_info:
        await chain.call(sender, entrypoint, arg, amount)
    return exc_info.value.raw


# ─── Raw failure shapes ───────────────────────────────────────────


class TestFailureShapes:
    @pytest.mark.asyncio
    async def test_authorization_failures_are_bare_ints(self):
        chain = await make_chain()
        raw = await raw_failure(chain, BOB, "transfer_ownership", {"new_owner": BOB})
        assert raw == int(ErrorCode.NOT_ADMIN)

    @pytest.mark.asyncio
    async def test_token_failures_are_pairs(self):
        chain = await make_chain(alice=1)
        raw = await raw_failure(chain, ALICE, "unfreeze", {"tokens": 3})
        assert raw == (int(ErrorCode.NOT_ENOUGH_FROZEN_TOKENS), {"required": 3, "present": 1})

    @pytest.mark.asyncio
    async def test_other_failures_are_expressions(self):
        chain = await make_chain()
        raw = await raw_failure(chain, ALICE, "flush", {"limit": 1})
        assert raw == {"int": str(int(ErrorCode.EMPTY_FLUSH))}

    @pytest.mark.asyncio
    async def test_keyed_failures_are_pair_expressions(self):
        chain = await make_chain(bob=1)
        raw = await raw_failure(
            chain, BOB, "vote", {"owner": BOB, "proposal_key": 3, "upvote": True, "tokens": 1}
        )
        assert raw["prim"] == "Pair"
        assert raw["args"][1] == {"int": "3"}

    @pytest.mark.asyncio
    async def test_forbidden_value(self):
        chain = await make_chain()
        raw = await raw_failure(chain, ALICE, "freeze", {"tokens": 1}, Decimal("2"))
        assert ErrorNormalizer().normalize(raw) is ErrorCode.FORBIDDEN_XTZ

    @pytest.mark.asyncio
    async def test_every_shape_normalizes(self):
        chain = await make_chain(alice=1)
        normalizer = ErrorNormalizer()
        raws = [
            await raw_failure(chain, BOB, "accept_ownership", {}),
            await raw_failure(chain, ALICE, "unfreeze", {"tokens": 2}),
            await raw_failure(chain, ALICE, "drop_proposal", {"proposal_key": 0}),
        ]
        assert [normalizer.normalize(r) for r in raws] == [
            ErrorCode.NOT_PENDING_ADMIN,
            ErrorCode.NOT_ENOUGH_FROZEN_TOKENS,
            ErrorCode.PROPOSAL_NOT_EXIST,
        ]


async def voted_and_flushed() -> EmulatedChain:
    chain = await make_chain(alice=3, bob=3)
    await chain.call(ALICE, "propose", {"frozen_tokens": 1, "metadata": {"kind": "text", "text": ""}}, ZERO)
    await chain.call(BOB, "vote", {"owner": BOB, "proposal_key": 0, "upvote": True, "tokens": 2}, ZERO)
    await chain.advance_level(2)
    await chain.call(ALICE, "flush", {"limit": 1}, ZERO)
    return chain


class TestUnstakeVote:
    @pytest.mark.asyncio
    async def test_failures_are_keyed_expressions(self):
        chain = await voted_and_flushed()
        await chain.call(ALICE, "propose", {"frozen_tokens": 1, "metadata": {"kind": "text", "text": ""}}, ZERO)
        normalizer = ErrorNormalizer()

        live = await raw_failure(chain, BOB, "unstake_vote", {"proposal_keys": [1]})
        never = await raw_failure(chain, ALICE, "unstake_vote", {"proposal_keys": [0]})
        assert live["prim"] == never["prim"] == "Pair"
        assert normalizer.normalize(live) is ErrorCode.UNSTAKE_INVALID_PROPOSAL
        assert normalizer.normalize(never) is ErrorCode.VOTER_DOES_NOT_EXIST

    @pytest.mark.asyncio
    async def test_value_forbidden(self):
        chain = await voted_and_flushed()
        raw = await raw_failure(chain, BOB, "unstake_vote", {"proposal_keys": [0]}, Decimal("1"))
        assert ErrorNormalizer().normalize(raw) is ErrorCode.FORBIDDEN_XTZ

    @pytest.mark.asyncio
    async def test_releases_stake(self):
        chain = await voted_and_flushed()
        before = await chain.get_storage(DAO)
        assert before.frozen[BOB] == FrozenBalance(total=3, staked=2)
        assert before.staked_votes == {BOB: {0: 2}}

        await chain.call(BOB, "unstake_vote", {"proposal_keys": [0]}, ZERO)
        after = await chain.get_storage(DAO)
        assert after.frozen[BOB] == FrozenBalance(total=3)
        assert after.staked_votes == {}

    @pytest.mark.asyncio
    async def test_partial_failure_restores_stake(self):
        chain = await voted_and_flushed()
        await raw_failure(chain, BOB, "unstake_vote", {"proposal_keys": [0, 7]})
        storage = await chain.get_storage(DAO)
        assert storage.staked_votes == {BOB: {0: 2}}


# ─── Atomicity & storage ──────────────────────────────────────────


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_failed_call_restores_storage_and_balances(self):
        chain = await make_chain(balance="5", alice=1)
        before_storage = await chain.get_storage(DAO)
        before_ledger = await chain.get_storage(GOVERNANCE_TOKEN)
        await raw_failure(
            chain,
            ALICE,
            "propose",
            {"frozen_tokens": 4, "metadata": {"kind": "text", "text": ""}},
            Decimal("3"),
        )
        assert await chain.get_storage(DAO) == before_storage
        assert await chain.get_storage(GOVERNANCE_TOKEN) == before_ledger
        assert await chain.get_balance(DAO) == Decimal("5")

    @pytest.mark.asyncio
    async def test_funding_is_not_rolled_back(self):
        chain = await make_chain()
        await chain.fund(BOB, Decimal("1"))
        await raw_failure(chain, BOB, "transfer_ownership", {"new_owner": BOB})
        assert await chain.get_balance(BOB) == Decimal("1")

    @pytest.mark.asyncio
    async def test_value_moves_to_dao(self):
        chain = await make_chain()
        await chain.transfer(ALICE, Decimal("2"))
        assert await chain.get_balance(DAO) == Decimal("2")
        assert await chain.get_balance(ALICE) == Decimal("-2")

    @pytest.mark.asyncio
    async def test_storage_decodes_to_domain_types(self):
        chain = await make_chain()
        await chain.call(ALICE, "freeze", {"tokens": 2}, ZERO)
        await chain.call(ALICE, "update_delegate", {"delegate": BOB, "enable": True}, ZERO)
        storage = await chain.get_storage(DAO)
        assert isinstance(storage, DaoStorage)
        assert storage.frozen == {ALICE: FrozenBalance(total=2)}
        assert storage.delegates == {ALICE: [BOB]}
        assert await chain.get_storage(GOVERNANCE_TOKEN) == [
            TokenTransfer(source=ALICE, destination=DAO, amount=2)
        ]

    @pytest.mark.asyncio
    async def test_levels_advance(self):
        chain = await make_chain()
        start = chain.level
        await chain.advance_level(3)
        assert chain.level == start + 3

    @pytest.mark.asyncio
    async def test_unknown_entrypoint_is_unsupported(self):
        chain = await make_chain()
        with pytest.raises(UnsupportedOperationError):
            await chain.call(ALICE, "mint", {}, ZERO)

    @pytest.mark.asyncio
    async def test_missing_token_contract_is_unresolvable(self):
        chain = await make_chain()
        admin = chain.contracts[DAO]["admin"]
        before = await chain.get_storage(DAO)
        with pytest.raises(UnresolvableHandleError):
            await chain.call(
                admin,
                "transfer_contract_tokens",
                {"contract": "KT1Nowhere", "from": DAO, "to": BOB, "tokens": 1},
                ZERO,
            )
        assert await chain.get_storage(DAO) == before

    @pytest.mark.asyncio
    async def test_missing_view_contract_is_unresolvable(self):
        chain = await make_chain("registry")
        with pytest.raises(UnresolvableHandleError):
            await chain.call(BOB, "lookup_registry", {"key": "alpha", "callback": "KT1Nowhere"}, ZERO)

    @pytest.mark.asyncio
    async def test_resolve(self):
        chain = await make_chain()
        assert await chain.resolve(VIEW_CONSUMER)
        assert not await chain.resolve("KT1Nowhere")


# ─── Custom dispatch ──────────────────────────────────────────────


class TestRegistryDispatcher:
    @pytest.mark.asyncio
    async def test_lookup_posts_to_view_consumer(self):
        chain = await make_chain("registry")
        chain.contracts[DAO]["registry"]["alpha"] = "v1"
        op = CustomCall(sender=BOB, param=LookupRegistry(key="alpha", callback=VIEW_CONSUMER))
        assert await RegistryDispatcher().dispatch(chain, op)
        assert await chain.get_storage(VIEW_CONSUMER) == [RegistryView(key="alpha", value="v1")]

    @pytest.mark.asyncio
    async def test_update_receivers(self):
        chain = await make_chain("registry")
        op = CustomCall(sender=ALICE, param=UpdateReceivers(receivers=(BOB,)))
        assert await RegistryDispatcher().dispatch(chain, op)
        assert (await chain.get_storage(DAO)).receivers == [BOB]
