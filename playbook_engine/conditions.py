"""Typed predicates evaluated against an execution's context."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel

_MISSING = object()


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    TRUTHY = "truthy"


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted ``path`` through nested mappings.

    Returns a sentinel when any segment is missing so that ``None`` values
    stored in the context are distinguishable from absent keys.
    """
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


class Condition(BaseModel):
    """A single comparison of a context field against a value."""

    field: str
    operator: Operator = Operator.EQ
    value: Any = None

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = resolve_path(context, self.field)
        op = self.operator

        if op is Operator.EXISTS:
            return actual is not _MISSING
        if actual is _MISSING:
            return op in (Operator.NE, Operator.NOT_IN)
        if op is Operator.TRUTHY:
            return bool(actual)
        if op is Operator.EQ:
            return actual == self.value
        if op is Operator.NE:
            return actual != self.value
        if op is Operator.IN:
            return actual in (self.value or [])
        if op is Operator.NOT_IN:
            return actual not in (self.value or [])

        try:
            if op is Operator.GT:
                return actual > self.value
            if op is Operator.GTE:
                return actual >= self.value
            if op is Operator.LT:
                return actual < self.value
            if op is Operator.LTE:
                return actual <= self.value
        except TypeError:
            # Incomparable types never match an ordering branch.
            return False
        return False
