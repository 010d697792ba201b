"""
lockstep — DAO Reference Domain

A complete set of collaborators for the differential engine, modelled on a
governance DAO with frozen-token staking, proposals, voting and a treasury.

Public API:
  DaoGenerator        — seeded sequence generator
  DaoModel            — pure reference semantics
  EmulatedChain       — in-process system under test, raw chain-style failures
  RegistryDispatcher  — custom entrypoints of the registry variant
  DaoStorage          — decoded DAO storage compared after each step
"""

from lockstep.dao.emulator import EmulatedChain, RegistryDispatcher
from lockstep.dao.generator import DaoGenerator, environment, initial_state
from lockstep.dao.model import DaoModel
from lockstep.dao.types import (
    DaoConfig,
    DaoStorage,
    FrozenBalance,
    Proposal,
    RegistryView,
    TokenTransfer,
)

__all__ = [
    "DaoConfig",
    "DaoGenerator",
    "DaoModel",
    "DaoStorage",
    "EmulatedChain",
    "FrozenBalance",
    "Proposal",
    "RegistryDispatcher",
    "RegistryView",
    "TokenTransfer",
    "environment",
    "initial_state",
]
