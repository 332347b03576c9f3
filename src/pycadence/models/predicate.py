"""Condition grammar shared by condition nodes, triggers and drip steps.

A predicate is a JSON-compatible dict in one of four shapes:

    {"field": "country", "op": "eq", "value": "US"}
    {"all": [<predicate>, ...]}
    {"any": [<predicate>, ...]}
    {"not": <predicate>}

Comparison operators:
    eq, ne, gt, gte, lt, lte      equality and ordering
    in, not_in                    membership of the field in a list value
    contains, not_contains        substring or list membership of value in the field
    exists, not_exists            field present and not None (no value)

Field names are dotted paths. "event.<path>" reads the event payload,
"recipient.<path>" reads recipient attributes and "event_type" is the
event type itself. Unscoped names try the event payload first, then the
recipient attributes.

Evaluation is total: it never raises. A missing field or a type mismatch
makes a positive operator false and its negated form true.

Example:
    ```python
    predicate = parse_predicate({
        "all": [
            {"field": "event_type", "op": "eq", "value": "signup"},
            {"field": "country", "op": "eq", "value": "US"},
        ]
    })
    predicate.evaluate(EvaluationScope(event_type="signup", payload={"country": "CA"}))
    # False
    ```
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pycadence.errors import ValidationError

__all__ = [
    "Predicate",
    "Comparison",
    "AllOf",
    "AnyOf",
    "Not",
    "EvaluationScope",
    "parse_predicate",
    "OPERATORS",
]

_MISSING = object()

OPERATORS = frozenset(
    {
        "eq",
        "ne",
        "gt",
        "gte",
        "lt",
        "lte",
        "in",
        "not_in",
        "contains",
        "not_contains",
        "exists",
        "not_exists",
    }
)

_UNARY = frozenset({"exists", "not_exists"})
_LIST_VALUED = frozenset({"in", "not_in"})


@dataclass(frozen=True)
class EvaluationScope:
    """Data a predicate is evaluated against."""

    event_type: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def resolve(self, path: str) -> Any:
        """Return the value at path, or the _MISSING sentinel."""
        if path == "event_type":
            return self.event_type if self.event_type is not None else _MISSING

        head, _, rest = path.partition(".")
        if head == "event" and rest:
            return _walk(self.payload, rest)
        if head == "recipient" and rest:
            return _walk(self.attributes, rest)

        value = _walk(self.payload, path)
        if value is _MISSING:
            value = _walk(self.attributes, path)
        return value


def _walk(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> float | None:
    # bool is an int subclass but never a number here
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _order(actual: Any, expected: Any) -> int | None:
    """Three-way compare, or None when the values are not comparable."""
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return (left > right) - (left < right)
    if isinstance(actual, str) and isinstance(expected, str):
        return (actual > expected) - (actual < expected)
    return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _as_number(actual), _as_number(expected)
    return left is not None and right is not None and left == right


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_equals(item, expected) for item in actual)
    return False


@dataclass(frozen=True)
class Comparison:
    """A single field comparison."""

    field: str
    op: str
    value: Any = None

    def evaluate(self, scope: EvaluationScope) -> bool:
        actual = scope.resolve(self.field)
        found = actual is not _MISSING

        match self.op:
            case "exists":
                return found and actual is not None
            case "not_exists":
                return not (found and actual is not None)
            case "eq":
                return found and _equals(actual, self.value)
            case "ne":
                return not (found and _equals(actual, self.value))
            case "in":
                return found and any(_equals(actual, item) for item in self.value)
            case "not_in":
                return not (found and any(_equals(actual, item) for item in self.value))
            case "contains":
                return found and _contains(actual, self.value)
            case "not_contains":
                return not (found and _contains(actual, self.value))

        if not found:
            return False
        ordering = _order(actual, self.value)
        if ordering is None:
            return False
        match self.op:
            case "gt":
                return ordering > 0
            case "gte":
                return ordering >= 0
            case "lt":
                return ordering < 0
            case "lte":
                return ordering <= 0
        return False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"field": self.field, "op": self.op}
        if self.op not in _UNARY:
            data["value"] = list(self.value) if self.op in _LIST_VALUED else self.value
        return data


@dataclass(frozen=True)
class AllOf:
    """Logical AND of its clauses."""

    clauses: tuple[Predicate, ...]

    def evaluate(self, scope: EvaluationScope) -> bool:
        return all(clause.evaluate(scope) for clause in self.clauses)

    def to_dict(self) -> dict[str, Any]:
        return {"all": [clause.to_dict() for clause in self.clauses]}


@dataclass(frozen=True)
class AnyOf:
    """Logical OR of its clauses."""

    clauses: tuple[Predicate, ...]

    def evaluate(self, scope: EvaluationScope) -> bool:
        return any(clause.evaluate(scope) for clause in self.clauses)

    def to_dict(self) -> dict[str, Any]:
        return {"any": [clause.to_dict() for clause in self.clauses]}


@dataclass(frozen=True)
class Not:
    """Logical negation."""

    clause: Predicate

    def evaluate(self, scope: EvaluationScope) -> bool:
        return not self.clause.evaluate(scope)

    def to_dict(self) -> dict[str, Any]:
        return {"not": self.clause.to_dict()}


Predicate = Comparison | AllOf | AnyOf | Not


def parse_predicate(data: Any) -> Predicate:
    """
    Parse and validate a predicate dict.

    Already-parsed predicates are returned unchanged, so callers can
    accept either form.

    Args:
        data: Predicate dict (or an already-parsed Predicate)

    Returns:
        The parsed predicate tree

    Raises:
        ValidationError: If the dict does not follow the grammar
    """
    if isinstance(data, (Comparison, AllOf, AnyOf, Not)):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"predicate must be a mapping, got {type(data).__name__}")

    if "all" in data or "any" in data:
        key = "all" if "all" in data else "any"
        if len(data) != 1:
            raise ValidationError(f"'{key}' predicate takes no other keys")
        clauses = data[key]
        if not isinstance(clauses, (list, tuple)) or not clauses:
            raise ValidationError(f"'{key}' requires a non-empty list of predicates")
        parsed = tuple(parse_predicate(clause) for clause in clauses)
        return AllOf(parsed) if key == "all" else AnyOf(parsed)

    if "not" in data:
        if len(data) != 1:
            raise ValidationError("'not' predicate takes no other keys")
        return Not(parse_predicate(data["not"]))

    field_name = data.get("field")
    op = data.get("op")
    if not isinstance(field_name, str) or not field_name.strip():
        raise ValidationError("comparison requires a non-empty 'field'")
    if op not in OPERATORS:
        raise ValidationError(f"unknown operator {op!r}; expected one of {sorted(OPERATORS)}")
    unknown = set(data) - {"field", "op", "value"}
    if unknown:
        raise ValidationError(f"unexpected keys in comparison: {sorted(unknown)}")

    if op in _UNARY:
        return Comparison(field=field_name, op=op)
    if "value" not in data:
        raise ValidationError(f"operator {op!r} requires a 'value'")

    value = data["value"]
    if op in _LIST_VALUED:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"operator {op!r} requires a list value")
        value = tuple(value)
    return Comparison(field=field_name, op=op, value=value)
