"""
Schema types for docgraph.

This module provides declarative definitions for stored entities:
- EntityTypeDef: Definition of an entity type
- FieldDef: Individual field definition (including reference fields)
- AggregateDef: Derived field maintained by the aggregate maintainer
- RecomputeStrategy: How an aggregate field is kept current

Types give entities a known field set. Payload keys outside that set are
kept in the entity's extension map instead of being rejected on read.

Invariants:
    - Reference fields hold identifiers only, never embedded documents
    - Every aggregate field is also a known field of its type
    - Recompute-from-source is the default aggregate strategy

Example:
    >>> Project = EntityTypeDef(
    ...     name="Project",
    ...     fields=(
    ...         field("title", "str", required=True),
    ...         field("members", "list_ref", target_type="User"),
    ...         field("open_count", "int", default=0),
    ...     ),
    ...     aggregates=(aggregate("open_count"),),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from difflib import get_close_matches
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported field types."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"
    JSON = "json"
    ENUM = "enum"
    REFERENCE = "ref"
    LIST_STRING = "list_str"
    LIST_INT = "list_int"
    LIST_REF = "list_ref"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string to FieldKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid field kind: {value}")

    @property
    def is_reference(self) -> bool:
        return self in (FieldKind.REFERENCE, FieldKind.LIST_REF)


class RecomputeStrategy(Enum):
    """How an aggregate field is brought up to date."""

    RECOMPUTE_FROM_SOURCE = "recompute-from-source"
    INCREMENTAL_DELTA = "incremental-delta"

    @classmethod
    def from_str(cls, value: str) -> RecomputeStrategy:
        for strategy in cls:
            if strategy.value == value:
                return strategy
        raise ValueError(f"Invalid recompute strategy: {value}")


_PY_TYPES: dict[FieldKind, tuple[type, ...]] = {
    FieldKind.STRING: (str,),
    FieldKind.INTEGER: (int,),
    FieldKind.FLOAT: (int, float),
    FieldKind.BOOLEAN: (bool,),
    FieldKind.TIMESTAMP: (int,),
    FieldKind.LIST_STRING: (list, tuple),
    FieldKind.LIST_INT: (list, tuple),
    FieldKind.LIST_REF: (list, tuple),
}


@dataclass(frozen=True)
class FieldDef:
    """Field definition within an entity type.

    Attributes:
        name: Field name as stored in the document
        kind: Data type
        required: Whether field is required
        default: Default value
        enum_values: Valid values for enum type
        target_type: Target entity type name for reference fields
        ordered: Whether a list reference preserves its stored order
        description: Documentation
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    target_type: str | None = None
    ordered: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")
        if self.target_type is not None and not self.kind.is_reference:
            raise ValueError(f"target_type only applies to reference fields ('{self.name}')")

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field."""
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        if self.kind == FieldKind.ENUM:
            if self.enum_values is not None and value not in self.enum_values:
                return False, f"Field '{self.name}' must be one of {self.enum_values}"
            return True, None

        if self.kind == FieldKind.REFERENCE:
            if not _is_reference_value(value):
                return False, f"Field '{self.name}' must be an id or {{key, partition}} mapping"
            return True, None

        expected = _PY_TYPES.get(self.kind)
        if expected is None:
            return True, None
        # bool is an int subclass; keep it out of numeric fields
        if isinstance(value, bool) and self.kind != FieldKind.BOOLEAN:
            return False, f"Field '{self.name}' expects {self.kind.value}, got bool"
        if not isinstance(value, expected):
            return False, f"Field '{self.name}' expects {self.kind.value}, got {type(value).__name__}"

        if self.kind == FieldKind.LIST_REF:
            bad = [item for item in value if not _is_reference_value(item)]
            if bad:
                return False, f"Field '{self.name}' holds invalid references: {bad[:3]}"

        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
        }
        if self.required:
            result["required"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.target_type is not None:
            result["target_type"] = self.target_type
        if self.kind == FieldKind.LIST_REF and not self.ordered:
            result["ordered"] = False
        if self.description:
            result["description"] = self.description
        return result


def _is_reference_value(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value)
    if isinstance(value, dict):
        return isinstance(value.get("key"), str) and bool(value["key"])
    return False


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    target_type: str | None = None,
    ordered: bool = True,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Args:
        name: Field name
        kind: Field type
        required: Whether required
        default: Default value
        enum_values: Valid enum values
        target_type: Target type for reference fields
        ordered: Whether list references keep their stored order
        description: Documentation

    Returns:
        FieldDef instance

    Example:
        >>> title = field("title", "str", required=True)
        >>> members = field("members", "list_ref", target_type="User")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        default=default,
        enum_values=enum_values,
        target_type=target_type,
        ordered=ordered,
        description=description,
    )


@dataclass(frozen=True)
class AggregateDef:
    """Aggregate field maintained from child documents.

    Attributes:
        name: Field name on the parent type
        strategy: How the value is kept current
        description: Documentation
    """

    name: str
    strategy: RecomputeStrategy = RecomputeStrategy.RECOMPUTE_FROM_SOURCE
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "strategy": self.strategy.value}


def aggregate(
    name: str,
    strategy: str | RecomputeStrategy = RecomputeStrategy.RECOMPUTE_FROM_SOURCE,
    *,
    description: str = "",
) -> AggregateDef:
    """Convenience function to create an AggregateDef.

    Example:
        >>> aggregate("open_count")
        >>> aggregate("view_count", "incremental-delta")
    """
    if isinstance(strategy, str):
        strategy = RecomputeStrategy.from_str(strategy)
    return AggregateDef(name=name, strategy=strategy, description=description)


@dataclass(frozen=True)
class EntityTypeDef:
    """Definition of an entity type.

    Attributes:
        name: Type name, stored as the entity's tag
        fields: Tuple of field definitions
        aggregates: Aggregate fields and their strategies
        description: Documentation

    Example:
        >>> Task = EntityTypeDef(
        ...     name="Task",
        ...     fields=(
        ...         field("title", "str", required=True),
        ...         field("status", "enum", enum_values=("open", "done")),
        ...         field("project", "ref", target_type="Project"),
        ...     ),
        ... )
    """

    name: str
    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    aggregates: tuple[AggregateDef, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        """Validate entity type definition."""
        if not self.name:
            raise ValueError("Entity type name cannot be empty")

        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field name in entity type '{self.name}'")

        known = set(names)
        for agg in self.aggregates:
            if agg.name not in known:
                raise ValueError(
                    f"Aggregate '{agg.name}' is not a field of entity type '{self.name}'"
                )

    def get_field(self, name: str) -> FieldDef | None:
        """Get field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        """Get list of field names."""
        return [f.name for f in self.fields]

    def reference_fields(self) -> list[FieldDef]:
        """Fields that hold references to other entities."""
        return [f for f in self.fields if f.kind.is_reference]

    def get_reference(self, name: str) -> FieldDef:
        """Get a reference field by name.

        Raises:
            UnknownFieldError: If no reference field has this name
        """
        f = self.get_field(name)
        if f is None or not f.kind.is_reference:
            from .errors import UnknownFieldError

            raise UnknownFieldError(
                name,
                self.name,
                _find_suggestions(name, [r.name for r in self.reference_fields()]),
            )
        return f

    def get_aggregate(self, name: str) -> AggregateDef | None:
        """Get aggregate definition by field name."""
        for agg in self.aggregates:
            if agg.name == name:
                return agg
        return None

    def split_payload(self, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split a stored payload into known fields and extension fields."""
        known = {f.name for f in self.fields}
        fields = {k: v for k, v in payload.items() if k in known}
        extra = {k: v for k, v in payload.items() if k not in known}
        return fields, extra

    def validate_payload(self, payload: dict[str, Any]) -> tuple[bool, list[str]]:
        """Validate known fields of a payload against this type."""
        errors: list[str] = []

        for f in self.fields:
            value = payload.get(f.name, f.default)
            is_valid, error = f.validate_value(value)
            if not is_valid and error:
                errors.append(error)

        return len(errors) == 0, errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "aggregates": [a.to_dict() for a in self.aggregates],
            "description": self.description,
        }

    def apply_defaults(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Copy of payload with defaults filled in for absent fields."""
        result = {f.name: f.default for f in self.fields if f.default is not None}
        result.update(payload)
        return result

    def new(self, **kwargs: Any) -> dict[str, Any]:
        """Create a validated payload for this type.

        Args:
            **kwargs: Field values

        Returns:
            Validated payload dictionary

        Raises:
            TypeError: If unknown field is provided
            ValueError: If validation fails

        Example:
            >>> payload = Task.new(title="Write docs", status="open")
        """
        known = {f.name for f in self.fields}
        unknown = set(kwargs.keys()) - known
        if unknown:
            suggestions = _find_suggestions(sorted(unknown)[0], list(known))
            msg = f"Unknown field(s): {sorted(unknown)}"
            if suggestions:
                msg += f". Did you mean: {suggestions}?"
            raise TypeError(msg)

        payload = self.apply_defaults(kwargs)
        is_valid, errors = self.validate_payload(payload)
        if not is_valid:
            raise ValueError(f"Validation failed: {'; '.join(errors)}")

        return payload

    def __hash__(self) -> int:
        return hash(self.name)


def _find_suggestions(unknown: str, known: list[str]) -> list[str]:
    """Find similar field names for suggestions."""
    return get_close_matches(unknown, known, n=3)
