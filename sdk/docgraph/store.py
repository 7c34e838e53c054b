"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all store adapters must
implement, along with the WriteResult returned by conditional writes.

Invariants:
    - Version tokens are opaque strings that change on every successful write
    - A stale token yields WriteResult(error=ConflictError), never an exception
    - Missing documents raise NotFoundError; every other failure raises StoreError
    - get_many returns (found, missing) and never raises for missing keys

How to change safely:
    - Protocol changes require updating all adapters
    - Keep conflict reporting in the result value, not in exceptions
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .errors import ConflictError

if TYPE_CHECKING:
    from .entity import Entity
    from .predicates import Predicate

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of a conditional write.

    Attributes:
        entity: Stored entity carrying its new version token (None on conflict)
        error: ConflictError when the expected token was stale
    """

    entity: Entity | None = None
    error: ConflictError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def version(self) -> str | None:
        return self.entity.version if self.entity is not None else None


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for partitioned document store adapters.

    Consistency contract:
        - conditional_write is atomic per document
        - A write with expected_version=None only succeeds if the key is absent
        - Rejected writes are never visible to readers

    Cost contract:
        - get/get_many/query with a partition touch one partition
        - query without a partition enumerates every partition

    Example:
        >>> store = InMemoryDocumentStore()
        >>> created = await store.conditional_write(Entity("p1", "t1", {"n": 0}), None)
        >>> current = await store.get("p1", "t1")
    """

    @abstractmethod
    async def get(self, key: str, partition: str) -> Entity:
        """Point read.

        Raises:
            NotFoundError: If the key is absent from the partition
            StoreError: For backend failures
        """
        ...

    @abstractmethod
    async def get_many(self, keys: list[str], partition: str) -> tuple[list[Entity], list[str]]:
        """Batched read of several keys within one partition.

        Returns:
            Tuple of (found entities, missing keys)

        Raises:
            StoreError: For backend failures
        """
        ...

    @abstractmethod
    async def conditional_write(
        self,
        entity: Entity,
        expected_version: str | None,
    ) -> WriteResult:
        """Write `entity` only if the stored token equals `expected_version`.

        Args:
            entity: New state (key and partition select the document)
            expected_version: Token read before the write, None to create

        Returns:
            WriteResult with the stored entity, or a ConflictError

        Raises:
            NotFoundError: If the document was deleted since it was read
            StoreError: For backend failures
        """
        ...

    @abstractmethod
    def query(
        self,
        predicate: Predicate | None = None,
        partition: str | None = None,
    ) -> AsyncIterator[Entity]:
        """Lazily yield entities matching `predicate`.

        Single-partition when `partition` is given, otherwise the store
        enumerates all partitions. Each call starts a fresh scan.
        """
        ...

    @abstractmethod
    async def list_partitions(self) -> list[str]:
        """Known partition scopes, sorted."""
        ...

    @abstractmethod
    async def delete(
        self,
        key: str,
        partition: str,
        expected_version: str | None = None,
    ) -> bool:
        """Delete a document, optionally guarded by its version token.

        Returns:
            True if deleted, False if absent or the token was stale
        """
        ...


def conflict_for(
    entity: Entity,
    expected_version: str | None,
    current_version: str | None,
) -> WriteResult:
    """Build the WriteResult for a rejected conditional write."""
    logger.debug(
        "Conditional write rejected",
        extra={
            "key": entity.key,
            "partition": entity.partition,
            "expected_version": expected_version,
            "current_version": current_version,
        },
    )
    return WriteResult(
        error=ConflictError(
            key=entity.key,
            partition=entity.partition,
            expected_version=expected_version,
            current_version=current_version,
        )
    )
