"""
lockstep — Common Primitives

Shared base classes and utilities used across the engine and domains.
"""

from __future__ import annotations

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


# ─── Base Models ──────────────────────────────────────────────────


class LockstepBaseModel(BaseModel):
    """Base model for all lockstep records."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class FrozenModel(BaseModel):
    """Immutable, hashable record. Used for generated operations and reports."""

    model_config = {"frozen": True, "populate_by_name": True}
