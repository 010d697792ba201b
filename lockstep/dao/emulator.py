"""
lockstep — Emulated Chain

An in-process system under test for the DAO domain. Independent of the
reference model: the contract keeps its storage as plain JSON-like dicts,
exposes named entrypoints, and fails the way a chain does, with raw payloads
the error normalizer has to interpret:

  bare int                            authorization failures
  (int, detail) pair                  token-accounting failures
  {"int": "<n>"} / {"prim": "Pair"}   Micheline expressions, everything else

Every call is atomic: a failure restores storage and balances to what they
were before the call. Funding and level changes are never rolled back.
"""

from __future__ import annotations

import asyncio
import copy
from decimal import Decimal
from typing import Any

import structlog

from lockstep.dao.types import DaoStorage, RegistryView, TokenTransfer
from lockstep.engine.errors import SystemFailure, UnresolvableHandleError, UnsupportedOperationError
from lockstep.engine.system import CustomEntrypointDispatcher, SystemClient
from lockstep.engine.types import CustomCall, ErrorCode, GeneratedRun, LookupRegistry, UpdateReceivers

logger = structlog.get_logger().bind(system="lockstep.dao.emulator")

_ZERO = Decimal("0")

# Entrypoints that reject attached value
_VALUE_FORBIDDEN = frozenset(
    {"vote", "freeze", "unfreeze", "flush", "drop_proposal", "update_delegate", "unstake_vote"}
)


def _fail_int(code: ErrorCode) -> SystemFailure:
    return SystemFailure(int(code))


def _fail_pair(code: ErrorCode, detail: Any) -> SystemFailure:
    return SystemFailure((int(code), detail))


def _fail_expr(code: ErrorCode, detail: int | None = None) -> SystemFailure:
    if detail is None:
        return SystemFailure({"int": str(int(code))})
    return SystemFailure({"prim": "Pair", "args": [{"int": str(int(code))}, {"int": str(detail)}]})


class EmulatedChain(SystemClient):
    """
    One emulated chain hosting the DAO and its auxiliary contracts.

    ``latency_s`` suspends every submission to mimic network round-trips.
    """

    def __init__(self, latency_s: float = 0.0) -> None:
        self._latency_s = latency_s
        self.level = 0
        self.balances: dict[str, Decimal] = {}
        self.contracts: dict[str, dict[str, Any]] = {}
        self._dao = ""
        self._gov = ""
        self._view = ""
        self.submissions = 0

    # ── SystemClient ───────────────────────────────────────────────────────────

    async def prepare(self, run: GeneratedRun) -> None:
        env = run.environment
        initial = run.initial_state
        self._dao, self._gov, self._view = env.primary, env.governance_token, env.view_consumer
        self.level = env.start_level

        # Auxiliary contracts first, then the DAO itself
        self.contracts[env.guardian] = {}
        self.contracts[self._gov] = {"ledger": []}
        self.contracts[self._view] = {"seen": []}
        for handle in (self._gov, self._view):
            entity = initial.entities.get(handle)
            self.balances[handle] = entity.balance if entity else _ZERO
        self.contracts[self._dao] = self._originate(initial.storage)
        self.balances[self._dao] = initial.balance
        logger.debug("emulator_prepared", dao=self._dao, level=self.level)

    async def resolve(self, handle: str) -> bool:
        return handle in self.contracts

    async def advance_level(self, levels: int) -> None:
        self.level += levels

    async def fund(self, address: str, amount: Decimal) -> None:
        self.balances[address] = self.balances.get(address, _ZERO) + amount

    async def transfer(self, sender: str, amount: Decimal) -> None:
        await self.call(sender, "default", {}, amount)

    async def call(self, sender: str, entrypoint: str, argument: dict[str, Any], amount: Decimal) -> None:
        if self._latency_s:
            await asyncio.sleep(self._latency_s)
        self.submissions += 1

        handler = getattr(self, f"_ep_{entrypoint}", None)
        if handler is None:
            raise UnsupportedOperationError(f"DAO has no entrypoint {entrypoint!r}")

        saved_contracts = copy.deepcopy(self.contracts)
        saved_balances = dict(self.balances)
        try:
            if amount > 0 and entrypoint in _VALUE_FORBIDDEN:
                raise _fail_expr(ErrorCode.FORBIDDEN_XTZ)
            self.balances[sender] = self.balances.get(sender, _ZERO) - amount
            self.balances[self._dao] += amount
            handler(self.contracts[self._dao], sender, argument)
        except SystemFailure:
            self.contracts = saved_contracts
            self.balances = saved_balances
            raise

    async def get_storage(self, handle: str) -> Any:
        raw = self.contracts[handle]
        if handle == self._dao:
            return self._decode(raw)
        if handle == self._gov:
            return [TokenTransfer(**t) for t in raw["ledger"]]
        if handle == self._view:
            return [RegistryView(key=k, value=v) for k, v in raw["seen"]]
        return raw

    async def get_balance(self, handle: str) -> Decimal:
        return self.balances.get(handle, _ZERO)

    # ── Entrypoints ────────────────────────────────────────────────────────────

    def _ep_default(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        pass

    def _ep_freeze(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        tokens = arg["tokens"]
        ledger = s["ledger"].setdefault(sender, [0, 0])
        ledger[0] += tokens
        self._gov_transfer(sender, self._dao, tokens)
        self._tidy(s, sender)

    def _ep_unfreeze(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        tokens = arg["tokens"]
        total, staked = s["ledger"].get(sender, [0, 0])
        if total - staked < tokens:
            raise _fail_pair(ErrorCode.NOT_ENOUGH_FROZEN_TOKENS, {"required": tokens, "present": total - staked})
        s["ledger"][sender][0] -= tokens
        self._gov_transfer(self._dao, sender, tokens)
        self._tidy(s, sender)

    def _ep_propose(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        if len(s["proposals"]) >= s["max_proposals"]:
            raise _fail_expr(ErrorCode.MAX_PROPOSALS_REACHED)
        stake = arg["frozen_tokens"]
        meta = arg["metadata"]
        if stake < s["min_stake"] or meta["kind"] not in s["accepts"]:
            raise _fail_expr(ErrorCode.FAIL_PROPOSAL_CHECK)
        if meta["kind"] == "treasury_transfer" and Decimal(meta["amount"]) <= 0:
            raise _fail_expr(ErrorCode.FAIL_PROPOSAL_CHECK)
        total, staked = s["ledger"].get(sender, [0, 0])
        if total - staked < stake:
            raise _fail_pair(ErrorCode.NOT_ENOUGH_FROZEN_TOKENS, {"required": stake, "present": total - staked})

        s["ledger"].setdefault(sender, [0, 0])[1] += stake
        self._tidy(s, sender)
        key = s["counter"]
        s["counter"] = key + 1
        s["proposals"][key] = {
            "proposer": sender,
            "stake": stake,
            "start": self.level,
            "up": 0,
            "down": 0,
            "voters": {},
            "meta": meta,
        }

    def _ep_vote(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        owner = arg["owner"]
        if sender != owner and (owner, sender) not in s["delegates"]:
            raise _fail_int(ErrorCode.NOT_DELEGATE)
        key = arg["proposal_key"]
        prop = s["proposals"].get(key)
        if prop is None:
            raise _fail_expr(ErrorCode.PROPOSAL_NOT_EXIST, key)
        if self.level >= prop["start"] + s["period"]:
            raise _fail_expr(ErrorCode.VOTING_STAGE_OVER, key)
        tokens = arg["tokens"]
        total, staked = s["ledger"].get(owner, [0, 0])
        if total - staked < tokens:
            raise _fail_pair(ErrorCode.NOT_ENOUGH_FROZEN_TOKENS, {"required": tokens, "present": total - staked})

        s["ledger"][owner][1] += tokens
        prop["up" if arg["upvote"] else "down"] += tokens
        prop["voters"][owner] = prop["voters"].get(owner, 0) + tokens
        votes = s["votes"].setdefault(owner, {})
        votes[key] = votes.get(key, 0) + tokens

    def _ep_flush(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        due = sorted(k for k, p in s["proposals"].items() if self.level >= p["start"] + s["period"])
        due = due[: max(arg["limit"], 0)]
        if not due:
            raise _fail_expr(ErrorCode.EMPTY_FLUSH)
        for key in due:
            prop = s["proposals"].pop(key)
            passed = prop["up"] >= s["quorum"] and prop["up"] > prop["down"]
            self._settle(s, prop, slash=not passed)
            if passed:
                self._run_proposal(s, prop["meta"])

    def _ep_drop_proposal(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        key = arg["proposal_key"]
        prop = s["proposals"].get(key)
        if prop is None:
            raise _fail_expr(ErrorCode.PROPOSAL_NOT_EXIST, key)
        if sender not in (prop["proposer"], s["guardian"]):
            raise _fail_int(ErrorCode.DROP_PROPOSAL_CONDITION_NOT_MET)
        del s["proposals"][key]
        self._settle(s, prop, slash=False)

    def _ep_transfer_contract_tokens(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        if sender != s["admin"]:
            raise _fail_int(ErrorCode.NOT_ADMIN)
        target = self.contracts.get(arg["contract"])
        if target is None or "ledger" not in target:
            raise UnresolvableHandleError(f"no token contract at {arg['contract']!r}")
        target["ledger"].append(
            {"source": arg["from"], "destination": arg["to"], "token_id": 0, "amount": arg["tokens"]}
        )

    def _ep_transfer_ownership(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        if sender != s["admin"]:
            raise _fail_int(ErrorCode.NOT_ADMIN)
        s["pending"] = arg["new_owner"]

    def _ep_accept_ownership(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        if s["pending"] is None or sender != s["pending"]:
            raise _fail_int(ErrorCode.NOT_PENDING_ADMIN)
        s["admin"], s["pending"] = sender, None

    def _ep_unstake_vote(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        votes = s["votes"].get(sender, {})
        for key in arg["proposal_keys"]:
            if key in s["proposals"]:
                raise _fail_expr(ErrorCode.UNSTAKE_INVALID_PROPOSAL, key)
            if key not in votes:
                raise _fail_expr(ErrorCode.VOTER_DOES_NOT_EXIST, key)
            s["ledger"][sender][1] -= votes.pop(key)
        if not votes:
            s["votes"].pop(sender, None)

    def _ep_update_delegate(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        pair = (sender, arg["delegate"])
        if arg["enable"]:
            s["delegates"].add(pair)
        else:
            s["delegates"].discard(pair)

    def _ep_lookup_registry(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        callback = self.contracts.get(arg["callback"])
        if callback is None or "seen" not in callback:
            raise UnresolvableHandleError(f"no view contract at {arg['callback']!r}")
        callback["seen"].append((arg["key"], s["registry"].get(arg["key"])))

    def _ep_update_receivers(self, s: dict[str, Any], sender: str, arg: dict[str, Any]) -> None:
        if sender != s["admin"]:
            raise _fail_int(ErrorCode.NOT_ADMIN)
        if arg["add"]:
            s["receivers"].update(arg["receivers"])
        else:
            s["receivers"].difference_update(arg["receivers"])

    # ── Internal ───────────────────────────────────────────────────────────────

    def _gov_transfer(self, source: str, destination: str, amount: int) -> None:
        self.contracts[self._gov]["ledger"].append(
            {"source": source, "destination": destination, "token_id": 0, "amount": amount}
        )

    def _settle(self, s: dict[str, Any], prop: dict[str, Any], *, slash: bool) -> None:
        entry = s["ledger"].setdefault(prop["proposer"], [0, 0])
        entry[1] -= prop["stake"]
        if slash:
            entry[0] -= prop["stake"]
        self._tidy(s, prop["proposer"])

    def _run_proposal(self, s: dict[str, Any], meta: dict[str, Any]) -> None:
        if meta["kind"] == "treasury_transfer":
            amount = Decimal(meta["amount"])
            if self.balances[self._dao] < amount:
                return
            self.balances[self._dao] -= amount
            self.balances[meta["to"]] = self.balances.get(meta["to"], _ZERO) + amount
        elif meta["kind"] == "registry_update":
            if meta["value"] is None:
                s["registry"].pop(meta["key"], None)
            else:
                s["registry"][meta["key"]] = meta["value"]

    @staticmethod
    def _tidy(s: dict[str, Any], owner: str) -> None:
        if s["ledger"].get(owner, [0, 0])[0] == 0:
            s["ledger"].pop(owner, None)

    # ── Encoding ───────────────────────────────────────────────────────────────

    @staticmethod
    def _originate(storage: DaoStorage) -> dict[str, Any]:
        accepts = {
            "base": {"text"},
            "registry": {"text", "registry_update"},
            "treasury": {"text", "treasury_transfer"},
        }[storage.config.variant]
        return {
            "admin": storage.admin,
            "pending": storage.pending_owner,
            "guardian": storage.guardian,
            "token": storage.governance_token,
            "ledger": {a: [f.total, f.staked] for a, f in storage.frozen.items()},
            "delegates": {(o, d) for o, ds in storage.delegates.items() for d in ds},
            "proposals": {
                k: {
                    "proposer": p.proposer,
                    "stake": p.stake,
                    "start": p.start_level,
                    "up": p.upvotes,
                    "down": p.downvotes,
                    "voters": dict(p.voters),
                    "meta": p.metadata.model_dump(mode="json"),
                }
                for k, p in storage.proposals.items()
            },
            "votes": {o: dict(v) for o, v in storage.staked_votes.items()},
            "counter": storage.proposal_counter,
            "registry": dict(storage.registry),
            "receivers": set(storage.receivers),
            "variant": storage.config.variant,
            "period": storage.config.voting_period,
            "quorum": storage.config.quorum,
            "min_stake": storage.config.min_proposal_stake,
            "max_proposals": storage.config.max_proposals,
            "accepts": accepts,
        }

    @staticmethod
    def _decode(s: dict[str, Any]) -> DaoStorage:
        delegates: dict[str, list[str]] = {}
        for owner, delegate in sorted(s["delegates"]):
            delegates.setdefault(owner, []).append(delegate)
        return DaoStorage.model_validate(
            {
                "admin": s["admin"],
                "pending_owner": s["pending"],
                "guardian": s["guardian"],
                "governance_token": s["token"],
                "frozen": {a: {"total": t, "staked": st} for a, (t, st) in s["ledger"].items()},
                "delegates": delegates,
                "proposals": {
                    k: {
                        "proposer": p["proposer"],
                        "stake": p["stake"],
                        "start_level": p["start"],
                        "upvotes": p["up"],
                        "downvotes": p["down"],
                        "voters": p["voters"],
                        "metadata": p["meta"],
                    }
                    for k, p in s["proposals"].items()
                },
                "staked_votes": s["votes"],
                "proposal_counter": s["counter"],
                "registry": s["registry"],
                "receivers": sorted(s["receivers"]),
                "config": {
                    "variant": s["variant"],
                    "voting_period": s["period"],
                    "quorum": s["quorum"],
                    "min_proposal_stake": s["min_stake"],
                    "max_proposals": s["max_proposals"],
                },
            }
        )


class RegistryDispatcher(CustomEntrypointDispatcher):
    """Submits the registry variant's custom entrypoints."""

    async def dispatch(self, client: SystemClient, op: CustomCall) -> bool:
        match op.param:
            case LookupRegistry(key=key, callback=callback):
                await client.call(op.sender, "lookup_registry", {"key": key, "callback": callback}, op.xtz)
            case UpdateReceivers(add=add, receivers=receivers):
                await client.call(
                    op.sender, "update_receivers", {"add": add, "receivers": list(receivers)}, op.xtz
                )
            case _:
                return False
        return True
