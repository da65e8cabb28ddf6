"""
Metadata Filter Expressions
═══════════════════════════

Callers describe payload filters with a small tagged-variant type instead of
raw backend syntax:

  Eq(field, value)         field == value
  NotEq(field, value)      field != value
  In(field, values)        field in values   (empty → matches nothing)
  Range(field, gte, lte, gt, lt)

`parse_filter()` accepts the Mongo-like dict form used by the HTTP API:

  {"category": "legal"}                         → Eq
  {"category": ["a", "b"]}                      → In   (single item → Eq)
  {"year": {"$gte": 2020, "$lt": 2024}}         → Range
  {"user_id": {"$eq": ...}}, {"$ne": ...}, {"$in": [...]}
  {"$or": [{"a": 1}, {"b": {"$ne": 2}}]}        → Or group
  {"$and": [{"$or": [...]}, {"$or": [...]}]}   → every entry's conditions

Each $or alternative holds exactly one condition. $and is how a filter
carries more than one $or group; $or inside $or is rejected.

`compile_filter()` lowers a condition list into FilterClauses: must and
must_not conditions plus any_of groups, each of which needs at least one
matching member. Backends render the groups as separate OR nodes under one
AND, so (a ∨ b) ∧ (c ∨ d) keeps its shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Union
from uuid import UUID

from docsim.core.exceptions import FilterError

Scalar = Union[str, int, float, bool]

# Matches nothing: an empty $in must not degrade into "no filter"
IMPOSSIBLE_VALUE = "__impossible_value_no_match__"

_RANGE_OPERATORS = {"$gte": "gte", "$lte": "lte", "$gt": "gt", "$lt": "lt"}


def _scalar(field_name: str, value: Any) -> Scalar:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (str, int, float, bool)):
        return value
    raise FilterError(
        f"Filter value for '{field_name}' must be a scalar, got {type(value).__name__}",
        details={"field": field_name},
    )


def _field(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise FilterError("Filter field names must be non-empty strings")
    return name


# ---------------------------------------------------------------------------
# Condition variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Eq:
    field: str
    value: Scalar

    def __post_init__(self) -> None:
        object.__setattr__(self, "field", _field(self.field))
        object.__setattr__(self, "value", _scalar(self.field, self.value))


@dataclass(frozen=True)
class NotEq:
    field: str
    value: Scalar

    def __post_init__(self) -> None:
        object.__setattr__(self, "field", _field(self.field))
        object.__setattr__(self, "value", _scalar(self.field, self.value))


@dataclass(frozen=True)
class In:
    field:  str
    values: tuple[Scalar, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "field", _field(self.field))
        object.__setattr__(
            self, "values", tuple(_scalar(self.field, v) for v in self.values),
        )


@dataclass(frozen=True)
class Range:
    field: str
    gte:   float | None = None
    lte:   float | None = None
    gt:    float | None = None
    lt:    float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "field", _field(self.field))
        bounds = (self.gte, self.lte, self.gt, self.lt)
        if all(b is None for b in bounds):
            raise FilterError(f"Range on '{self.field}' needs at least one bound")
        for bound in bounds:
            if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float))):
                raise FilterError(f"Range bounds on '{self.field}' must be numbers")


Condition = Union[Eq, NotEq, In, Range]


@dataclass(frozen=True)
class Or:
    """Any of the contained conditions must hold."""
    conditions: tuple[Condition, ...]


FilterExpr = Union[Condition, Or]


@dataclass
class FilterClauses:
    must:     list[Condition] = field(default_factory=list)
    must_not: list[Condition] = field(default_factory=list)
    # One tuple per Or; a payload needs a match in every group
    any_of:   list[tuple[Condition, ...]] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.must or self.must_not or self.any_of)


# ---------------------------------------------------------------------------
# Dict form → conditions
# ---------------------------------------------------------------------------

def parse_filter(raw: Mapping[str, Any] | None) -> list[FilterExpr]:
    if not raw:
        return []
    if not isinstance(raw, Mapping):
        raise FilterError("Filters must be an object of field → condition")

    conditions: list[FilterExpr] = []
    for key, value in raw.items():
        if key == "$or":
            conditions.append(_parse_or(value))
            continue
        if key == "$and":
            if not isinstance(value, list) or not value:
                raise FilterError("$and expects a non-empty list of filter objects")
            for entry in value:
                conditions.extend(parse_filter(entry))
            continue
        if key.startswith("$"):
            raise FilterError(f"Unsupported top-level operator '{key}'")
        conditions.extend(_parse_entry(key, value))
    return conditions


def _parse_or(value: Any) -> Or:
    if not isinstance(value, list) or not value:
        raise FilterError("$or expects a non-empty list of filter objects")
    alternatives: list[Condition] = []
    for entry in value:
        if isinstance(entry, Mapping) and ("$or" in entry or "$and" in entry):
            raise FilterError("Nested $or / $and is not supported inside $or")
        parsed = parse_filter(entry)
        if len(parsed) != 1:
            raise FilterError(
                "Each $or alternative must hold exactly one condition",
                details={"alternative": entry if isinstance(entry, Mapping) else str(entry)},
            )
        alternatives.append(parsed[0])  # type: ignore[arg-type]
    return Or(tuple(alternatives))


def _parse_entry(name: str, value: Any) -> list[Condition]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        if len(items) == 1:
            return [Eq(name, items[0])]
        return [In(name, tuple(items))]
    if not isinstance(value, Mapping):
        return [Eq(name, value)]

    conditions: list[Condition] = []
    range_bounds: dict[str, Any] = {}
    for op, operand in value.items():
        if op == "$eq":
            conditions.append(Eq(name, operand))
        elif op == "$ne":
            conditions.append(NotEq(name, operand))
        elif op == "$in":
            if not isinstance(operand, (list, tuple)):
                raise FilterError(f"$in on '{name}' expects a list")
            conditions.append(In(name, tuple(operand)))
        elif op in _RANGE_OPERATORS:
            range_bounds[_RANGE_OPERATORS[op]] = operand
        else:
            raise FilterError(f"Unsupported operator '{op}' on '{name}'")
    if range_bounds:
        conditions.append(Range(name, **range_bounds))
    return conditions


# ---------------------------------------------------------------------------
# Conditions → clauses
# ---------------------------------------------------------------------------

def _normalized(condition: Condition) -> Condition:
    if isinstance(condition, In) and not condition.values:
        return Eq(condition.field, IMPOSSIBLE_VALUE)
    return condition


def compile_filter(conditions: Iterable[FilterExpr]) -> FilterClauses | None:
    clauses = FilterClauses()
    for condition in conditions:
        if isinstance(condition, Or):
            # NotEq stays as is inside a group; backends render it natively
            clauses.any_of.append(tuple(_normalized(c) for c in condition.conditions))
        elif isinstance(condition, NotEq):
            clauses.must_not.append(Eq(condition.field, condition.value))
        else:
            clauses.must.append(_normalized(condition))
    return None if clauses.is_empty() else clauses


def conditions_for(conditions: Iterable[FilterExpr], field_name: str) -> list[FilterExpr]:
    return [
        c for c in conditions
        if not isinstance(c, Or) and c.field == field_name
    ]


def without_field(conditions: Iterable[FilterExpr], field_name: str) -> list[FilterExpr]:
    return [
        c for c in conditions
        if isinstance(c, Or) or c.field != field_name
    ]
