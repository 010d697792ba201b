"""
lockstep — Error Normalizer

Maps whatever a system under test fails with onto the ErrorCode space the
reference model uses, so the two outcomes are comparable.

Rules, first match wins:
  1. an int                              → numeric table
  2. a pair whose first element is an int → rule 1 on that element
  3. an encoded union (Micheline JSON):
       {"int": "<n>"}                               → rule 1
       {"prim": "Pair", "args": [{"int": "<n>"}, …]} → rule 2
  4. SystemTimeout                       → configured timeout code, if any
  anything else                          → NormalizationFault (fatal)
"""

from __future__ import annotations

from typing import Any

import structlog

from lockstep.engine.errors import NormalizationFault
from lockstep.engine.types import ErrorCode

logger = structlog.get_logger().bind(system="lockstep.normalizer")


class SystemTimeout:
    """Raw failure recorded when a submission exceeds the step timeout."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s

    def __repr__(self) -> str:
        return f"SystemTimeout(timeout_s={self.timeout_s})"


def _default_table() -> dict[int, ErrorCode]:
    return {int(code): code for code in ErrorCode}


class ErrorNormalizer:
    """
    Stateless apart from its numeric table.

    Collaborators with extra numeric codes register them with ``register``;
    the table is otherwise the ErrorCode enum itself.
    """

    def __init__(
        self,
        table: dict[int, ErrorCode] | None = None,
        timeout_code: ErrorCode | None = None,
    ) -> None:
        self._table = dict(table) if table is not None else _default_table()
        self._timeout_code = timeout_code

    def register(self, numeric: int, code: ErrorCode) -> None:
        self._table[numeric] = code

    def normalize(self, raw: Any) -> ErrorCode:
        if _is_int(raw):
            return self._lookup(raw, raw)

        if isinstance(raw, (tuple, list)) and len(raw) == 2 and _is_int(raw[0]):
            return self._lookup(raw[0], raw)

        if isinstance(raw, dict):
            return self._from_expression(raw)

        if isinstance(raw, SystemTimeout) and self._timeout_code is not None:
            return self._timeout_code

        logger.error("normalization_fault", raw=repr(raw))
        raise NormalizationFault(raw)

    # ── Internal ───────────────────────────────────────────────────────────────

    def _lookup(self, numeric: int, raw: Any) -> ErrorCode:
        code = self._table.get(numeric)
        if code is None:
            logger.error("normalization_fault", raw=repr(raw), numeric=numeric)
            raise NormalizationFault(raw, reason=f"unknown error code {numeric}")
        return code

    def _from_expression(self, expr: dict[str, Any]) -> ErrorCode:
        numeric = _expression_int(expr)
        if numeric is not None:
            return self._lookup(numeric, expr)

        if expr.get("prim") == "Pair":
            args = expr.get("args")
            if isinstance(args, list) and len(args) >= 2 and isinstance(args[0], dict):
                first = _expression_int(args[0])
                if first is not None:
                    return self._lookup(first, expr)

        logger.error("normalization_fault", raw=repr(expr))
        raise NormalizationFault(expr, reason="unexpected expression")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _expression_int(expr: dict[str, Any]) -> int | None:
    if set(expr) != {"int"}:
        return None
    try:
        return int(expr["int"])
    except (TypeError, ValueError):
        return None
