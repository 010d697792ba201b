"""
lockstep — Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults)
2. Environment variables (overrides, LOCKSTEP_ prefix, "__" for nesting)

Every tunable parameter of a differential run lives here.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


class GeneratorConfig(BaseModel):
    """Options recognised by sequence generators."""

    max_length: int = 20
    # Relative weight of propose calls against every other call kind
    proposal_weight: float = 0.25
    start_level: int = 1
    variant: Literal["base", "registry", "treasury"] = "base"
    initial_balance: Decimal = Decimal("0")

    @field_validator("max_length")
    @classmethod
    def _positive_length(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_length must be >= 1")
        return v


class RunnerConfig(BaseModel):
    # Paid to the sender before every submission so the call can be paid for.
    # Never part of the compared balances.
    funding_amount: Decimal = Decimal("0.000001")
    step_timeout_s: float | None = None
    # Numeric code a step timeout maps to. None = timeouts are fatal.
    timeout_error_code: int | None = None
    # What to do with custom sub-variants the dispatcher does not define
    unsupported_custom: Literal["noop", "fail"] = "noop"
    concurrency: int = 4


# ─── Root ─────────────────────────────────────────────────────────


class LockstepConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOCKSTEP_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> LockstepConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    Explicit ``overrides`` win over both.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    if level := os.environ.get("LOCKSTEP_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = level
    if fmt := os.environ.get("LOCKSTEP_LOG_FORMAT"):
        raw.setdefault("logging", {})["format"] = fmt

    # Init kwargs outrank the environment in pydantic-settings, so nested
    # LOCKSTEP_<SECTION>__<KEY> variables are injected into the YAML dict.
    for name, value in os.environ.items():
        if not name.startswith("LOCKSTEP_") or "__" not in name:
            continue
        section, _, key = name[len("LOCKSTEP_"):].lower().partition("__")
        if section in LockstepConfig.model_fields and key:
            raw.setdefault(section, {})[key] = value

    if overrides:
        raw = _deep_merge(raw, overrides)

    return LockstepConfig(**raw)
