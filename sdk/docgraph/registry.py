"""
Schema registry for docgraph.

This module provides a local registry for:
- Registering entity types
- Type lookup by name
- Schema fingerprinting

Stores use the registry to split loaded payloads into known fields and
extension fields; the aggregate maintainer uses it to look up the
recompute strategy configured for each aggregate field.

Example:
    >>> from docgraph import get_registry, EntityTypeDef, field
    >>>
    >>> User = EntityTypeDef(name="User", fields=(field("email", "str"),))
    >>> registry = get_registry()
    >>> registry.register(User)
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Iterator

from .schema import EntityTypeDef

# Global registry
_global_registry: SchemaRegistry | None = None
_registry_lock = threading.Lock()


class RegistryFrozenError(Exception):
    """Registry is frozen and cannot be modified."""

    pass


class DuplicateRegistrationError(Exception):
    """An entity type with this name is already registered."""

    pass


class SchemaRegistry:
    """Local schema registry for entity type management.

    The registry stores all entity type definitions and provides lookup by
    name. It can be frozen to prevent modifications.

    Example:
        >>> registry = SchemaRegistry()
        >>> registry.register(Project)
        >>> registry.register(Task)
        >>> registry.freeze()
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._types: dict[str, EntityTypeDef] = {}
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, entity_type: EntityTypeDef) -> None:
        """Register an entity type.

        Args:
            entity_type: EntityTypeDef to register

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Cannot register: registry is frozen")

            if entity_type.name in self._types:
                raise DuplicateRegistrationError(
                    f"Entity type '{entity_type.name}' already registered"
                )

            self._types[entity_type.name] = entity_type

    def get(self, name: str | None) -> EntityTypeDef | None:
        """Get entity type by name."""
        if name is None:
            return None
        return self._types.get(name)

    def types(self) -> Iterator[EntityTypeDef]:
        """Iterate over all entity types."""
        yield from self._types.values()

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __len__(self) -> int:
        return len(self._types)

    def freeze(self) -> str:
        """Freeze registry and compute fingerprint.

        Returns:
            Schema fingerprint

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"entity_types": [self._types[name].to_dict() for name in sorted(self._types)]}

    def to_json(self, indent: int | None = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)


def get_registry() -> SchemaRegistry:
    """Get the global schema registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = SchemaRegistry()
        return _global_registry


def register_entity_type(entity_type: EntityTypeDef) -> None:
    """Register an entity type in the global registry."""
    get_registry().register(entity_type)


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
