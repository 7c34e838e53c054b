"""
Entity records for docgraph.

This module provides the in-memory representation of stored documents:
- Entity: Tagged record with known fields, an extension map and a version token
- Reference: Foreign identifier plus the partition needed to resolve it
- HydrationFailure: Marker attached to an entity whose association could not load

Invariants:
    - Version tokens are opaque and assigned only by the store
    - Associations are transient: never part of to_document()
    - copy() returns a detached entity with no associations
"""

from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .registry import SchemaRegistry


@dataclass(frozen=True)
class Reference:
    """A persisted pointer to another entity.

    Stored either as a bare key (same partition as the owner) or as a
    mapping with an explicit partition.

    Attributes:
        key: Target document key
        partition: Target partition scope
    """

    key: str
    partition: str

    @classmethod
    def parse(cls, value: Any, default_partition: str) -> Reference:
        """Parse a stored reference value.

        Args:
            value: Bare key string or {"key": ..., "partition": ...}
            default_partition: Owner's partition, used for bare keys

        Raises:
            ValueError: If the value is not a reference
        """
        if isinstance(value, str) and value:
            return cls(key=value, partition=default_partition)
        if isinstance(value, dict) and isinstance(value.get("key"), str) and value["key"]:
            return cls(key=value["key"], partition=value.get("partition") or default_partition)
        raise ValueError(f"Invalid reference value: {value!r}")

    def to_value(self, owner_partition: str | None = None) -> str | dict[str, str]:
        """Convert to the stored form, using the bare-key shorthand when possible."""
        if owner_partition is not None and owner_partition == self.partition:
            return self.key
        return {"key": self.key, "partition": self.partition}

    def __str__(self) -> str:
        return f"{self.partition}/{self.key}"


@dataclass
class HydrationFailure:
    """Why an entity's association was left unloaded.

    Attributes:
        reference_field: Field that failed to hydrate
        scopes: Partitions whose batched fetch failed
        error: Error message of the first failure
    """

    reference_field: str
    scopes: list[str]
    error: str


@dataclass
class Entity:
    """A document from the store.

    Attributes:
        key: Unique document key within its partition
        partition: Partition scope
        fields: Values of the type's known fields
        type_name: Entity type tag
        extra: Extension map for fields the type does not model
        version: Store-assigned version token (None if never stored)
        updated_at: Last write timestamp (Unix ms)
        associations: Hydrated targets per reference field (transient)
        hydration_errors: Failure markers per reference field (transient)
    """

    key: str
    partition: str
    fields: dict[str, Any] = field(default_factory=dict)
    type_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    version: str | None = None
    updated_at: int | None = None
    associations: dict[str, list[Entity]] = field(
        default_factory=dict, repr=False, compare=False
    )
    hydration_errors: dict[str, HydrationFailure] = field(
        default_factory=dict, repr=False, compare=False
    )

    @classmethod
    def from_document(
        cls,
        key: str,
        partition: str,
        payload: dict[str, Any],
        *,
        type_name: str | None = None,
        version: str | None = None,
        updated_at: int | None = None,
        registry: SchemaRegistry | None = None,
    ) -> Entity:
        """Build an entity from a stored payload.

        When the registry knows the type, payload keys outside its field set
        go to the extension map. Otherwise every key is treated as a field.
        """
        entity_type = registry.get(type_name) if registry is not None else None
        if entity_type is not None:
            fields, extra = entity_type.split_payload(payload)
        else:
            fields, extra = dict(payload), {}
        return cls(
            key=key,
            partition=partition,
            fields=fields,
            type_name=type_name,
            extra=extra,
            version=version,
            updated_at=updated_at,
        )

    def to_document(self) -> dict[str, Any]:
        """Payload as persisted: known fields merged with the extension map."""
        payload = dict(self.extra)
        payload.update(self.fields)
        return payload

    def get(self, name: str, default: Any = None) -> Any:
        """Get a field value, falling back to the extension map."""
        if name in self.fields:
            return self.fields[name]
        return self.extra.get(name, default)

    def __getitem__(self, name: str) -> Any:
        if name in self.fields:
            return self.fields[name]
        return self.extra[name]

    def __contains__(self, name: object) -> bool:
        return name in self.fields or name in self.extra

    def references(self, reference_field: str) -> list[Reference]:
        """Parse the references stored in a field.

        A single reference yields a one-element list; an absent field yields
        an empty list.
        """
        raw = self.get(reference_field)
        if raw is None:
            return []
        values = raw if isinstance(raw, (list, tuple)) else [raw]
        return [Reference.parse(v, self.partition) for v in values]

    def association(self, reference_field: str) -> list[Entity]:
        """Hydrated targets of a reference field.

        Raises:
            KeyError: If the field has not been hydrated on this instance
        """
        return self.associations[reference_field]

    def is_hydrated(self, reference_field: str) -> bool:
        return reference_field in self.associations

    def copy(self) -> Entity:
        """Detached deep copy without associations or failure markers."""
        return Entity(
            key=self.key,
            partition=self.partition,
            fields=_copy.deepcopy(self.fields),
            type_name=self.type_name,
            extra=_copy.deepcopy(self.extra),
            version=self.version,
            updated_at=self.updated_at,
        )

    def evolve(self, **changes: Any) -> Entity:
        """Detached copy with the given field values replaced."""
        new = self.copy()
        new.fields.update(changes)
        return new

    @property
    def ref(self) -> Reference:
        """Reference pointing at this entity."""
        return Reference(key=self.key, partition=self.partition)
