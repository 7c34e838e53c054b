"""Query predicates for docgraph.

Predicates are built with ``where()`` and combined with ``&``, ``|`` and ``~``::

    where("status") == "active"
    (where("tenantId") == "t1") & (where("priority") >= 3)
    where("tenantId").in_(["t1", "t2"])

They are evaluated client-side against entities (``matches``) and inspected
by the query router to find partition-key constraints.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .entity import Entity

_SEGMENT_RE = re.compile(r"^\$?[A-Za-z_][A-Za-z0-9_]*$")

NULL_EQ_ERROR = "Use .is_null() instead of == None in predicates."
NULL_NE_ERROR = "Use .is_not_null() instead of != None in predicates."

KEY_PATH = "$key"
PARTITION_PATH = "$partition"


def _validate_path(path: str) -> None:
    if not path:
        raise ValueError("Field path must not be empty")
    for segment in path.split("."):
        if not _SEGMENT_RE.match(segment):
            raise ValueError(f"Invalid path segment '{segment}' in '{path}'")


def resolve_path(entity: Entity, dotted_path: str) -> Any:
    """Resolve a dotted path against an entity, returning None on missing keys."""
    if dotted_path == KEY_PATH:
        return entity.key
    if dotted_path == PARTITION_PATH:
        return entity.partition

    head, _, rest = dotted_path.partition(".")
    current: Any = entity.get(head)
    if not rest:
        return current
    for segment in rest.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current


class Predicate:
    """Base class for predicates."""

    def __and__(self, other: Predicate) -> Logical:
        return Logical(op="AND", children=[self, other])

    def __or__(self, other: Predicate) -> Logical:
        return Logical(op="OR", children=[self, other])

    def __invert__(self) -> Logical:
        return Logical(op="NOT", children=[self])

    def matches(self, entity: Entity) -> bool:
        raise NotImplementedError


@dataclass
class Comparison(Predicate):
    """A comparison between a field path and a value."""

    field_path: str
    op: str  # "==", "!=", ">", ">=", "<", "<=", "IN", "STARTSWITH", "CONTAINS", "IS_NULL", "IS_NOT_NULL"
    value: Any = None

    def __hash__(self) -> int:
        v = self.value
        if isinstance(v, list):
            v = tuple(v)
        return hash((self.field_path, self.op, v))

    def __eq__(self, other: object) -> bool:  # type: ignore[override]
        if not isinstance(other, Comparison):
            return NotImplemented
        return (
            self.field_path == other.field_path
            and self.op == other.op
            and self.value == other.value
        )

    def matches(self, entity: Entity) -> bool:
        actual = resolve_path(entity, self.field_path)
        op = self.op

        if op == "IS_NULL":
            return actual is None
        if op == "IS_NOT_NULL":
            return actual is not None
        if op == "==":
            return actual == self.value
        if op == "!=":
            return actual != self.value
        if op == "IN":
            return actual in self.value
        if actual is None:
            return False
        if op == "STARTSWITH":
            return isinstance(actual, str) and actual.startswith(self.value)
        if op == "CONTAINS":
            try:
                return self.value in actual
            except TypeError:
                return False

        try:
            if op == ">":
                return actual > self.value
            if op == ">=":
                return actual >= self.value
            if op == "<":
                return actual < self.value
            if op == "<=":
                return actual <= self.value
        except TypeError:
            # Mismatched types never match, as in a document store
            return False

        raise ValueError(f"Unknown comparison operator: {op}")


@dataclass
class Logical(Predicate):
    """A logical combination of predicates."""

    op: str  # "AND", "OR", "NOT"
    children: list[Predicate] = field(default_factory=list)

    def matches(self, entity: Entity) -> bool:
        if self.op == "AND":
            return all(c.matches(entity) for c in self.children)
        if self.op == "OR":
            return any(c.matches(entity) for c in self.children)
        if self.op == "NOT":
            return not self.children[0].matches(entity)
        raise ValueError(f"Unknown logical operator: {self.op}")


class MatchAll(Predicate):
    """Predicate that matches every entity."""

    def matches(self, entity: Entity) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MatchAll)

    def __hash__(self) -> int:
        return hash("MatchAll")

    def __repr__(self) -> str:
        return "MatchAll()"


class FieldRef:
    """Builds predicates from operations on a field path."""

    def __init__(self, field_path: str) -> None:
        _validate_path(field_path)
        self._field_path = field_path

    @property
    def path(self) -> str:
        return self._field_path

    def __eq__(self, other: object) -> Comparison:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_EQ_ERROR)
        return Comparison(self._field_path, "==", other)

    def __ne__(self, other: object) -> Comparison:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_NE_ERROR)
        return Comparison(self._field_path, "!=", other)

    def __gt__(self, other: Any) -> Comparison:
        return Comparison(self._field_path, ">", other)

    def __ge__(self, other: Any) -> Comparison:
        return Comparison(self._field_path, ">=", other)

    def __lt__(self, other: Any) -> Comparison:
        return Comparison(self._field_path, "<", other)

    def __le__(self, other: Any) -> Comparison:
        return Comparison(self._field_path, "<=", other)

    def in_(self, values: list[Any]) -> Comparison:
        return Comparison(self._field_path, "IN", list(values))

    def startswith(self, prefix: str) -> Comparison:
        return Comparison(self._field_path, "STARTSWITH", prefix)

    def contains(self, item: Any) -> Comparison:
        return Comparison(self._field_path, "CONTAINS", item)

    def is_null(self) -> Comparison:
        return Comparison(self._field_path, "IS_NULL")

    def is_not_null(self) -> Comparison:
        return Comparison(self._field_path, "IS_NOT_NULL")

    __hash__ = None  # type: ignore[assignment]


def where(field_path: str) -> FieldRef:
    """Start a predicate on a field path (dotted for nested values)."""
    return FieldRef(field_path)


def match_all() -> MatchAll:
    return MatchAll()


def conjuncts(predicate: Predicate) -> list[Predicate]:
    """Flatten nested ANDs into their top-level terms."""
    if isinstance(predicate, Logical) and predicate.op == "AND":
        terms: list[Predicate] = []
        for child in predicate.children:
            terms.extend(conjuncts(child))
        return terms
    return [predicate]
