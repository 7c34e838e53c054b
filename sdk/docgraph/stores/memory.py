"""
In-memory document store implementation for testing.

This module provides a simple in-memory store for:
- Unit tests
- Integration tests
- Local development without a real document database

Invariants:
    - All data is lost on process exit
    - Provides the same conditional-write semantics as production stores
    - Every call yields to the event loop, so concurrent callers interleave
    - Returned entities are copies; callers never share stored state

How to change safely:
    - This is test-oriented code, changes don't affect production adapters
    - Keep interface compatible with the DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import time
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..entity import Entity
from ..errors import NotFoundError
from ..predicates import Predicate
from ..registry import SchemaRegistry
from ..store import WriteResult, conflict_for

logger = logging.getLogger(__name__)


@dataclass
class StoredDocument:
    """A document as held by the in-memory store."""

    type_name: str | None
    payload: dict[str, Any]
    version: str
    updated_at: int


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    documents: dict[str, StoredDocument] = field(default_factory=dict)


@dataclass
class StoreStats:
    """Call accounting for assertions in tests.

    Attributes:
        point_reads: Number of get() calls
        batch_reads: (partition, keys) for every get_many() call
        scans: Partition scanned by each query() step
        writes_applied: Successful conditional writes per (partition, key)
        writes_rejected: Conflicting conditional writes per (partition, key)
        interfering_writes: Writes made by simulated competing writers
    """

    point_reads: int = 0
    batch_reads: list[tuple[str, tuple[str, ...]]] = field(default_factory=list)
    scans: list[str] = field(default_factory=list)
    writes_applied: Counter = field(default_factory=Counter)
    writes_rejected: Counter = field(default_factory=Counter)
    interfering_writes: Counter = field(default_factory=Counter)

    def batch_reads_for(self, partition: str) -> list[tuple[str, ...]]:
        return [keys for scope, keys in self.batch_reads if scope == partition]

    def reset(self) -> None:
        self.point_reads = 0
        self.batch_reads.clear()
        self.scans.clear()
        self.writes_applied.clear()
        self.writes_rejected.clear()
        self.interfering_writes.clear()


@dataclass
class _Interference:
    mutate: Callable[[dict[str, Any]], dict[str, Any]] | None
    remaining: int | None


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Attributes:
        latency: Seconds each call sleeps before touching data
        stats: Call accounting (see StoreStats)

    Thread safety:
        Uses an asyncio lock around every mutation. Safe to use from
        multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> store.seed([Entity("p1", "t1", {"open_count": 0})])
        >>> entity = await store.get("p1", "t1")
    """

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        latency: float = 0.0,
        partitions: Iterable[str] = (),
    ) -> None:
        """Initialize in-memory store.

        Args:
            registry: Optional registry used to split known/extension fields
            latency: Simulated per-call latency in seconds
            partitions: Partitions to create up front
        """
        self.registry = registry
        self.latency = latency
        self.stats = StoreStats()
        self._partitions: dict[str, InMemoryPartition] = defaultdict(InMemoryPartition)
        for scope in partitions:
            self._partitions[scope]
        self._versions = itertools.count(1)
        self._lock = asyncio.Lock()
        self._failures: dict[tuple[str, str], Exception] = {}
        self._interference: dict[tuple[str, str], _Interference] = {}

    async def get(self, key: str, partition: str) -> Entity:
        """Point read."""
        await self._io()
        self.stats.point_reads += 1
        self._raise_injected("get", partition)

        doc = self._lookup(key, partition)
        if doc is None:
            raise NotFoundError(key, partition)
        return self._to_entity(key, partition, doc)

    async def get_many(self, keys: list[str], partition: str) -> tuple[list[Entity], list[str]]:
        """Batched read within one partition."""
        await self._io()
        self.stats.batch_reads.append((partition, tuple(keys)))
        self._raise_injected("get_many", partition)

        found: list[Entity] = []
        missing: list[str] = []
        for key in keys:
            doc = self._lookup(key, partition)
            if doc is None:
                missing.append(key)
            else:
                found.append(self._to_entity(key, partition, doc))
        return found, missing

    async def conditional_write(
        self,
        entity: Entity,
        expected_version: str | None,
    ) -> WriteResult:
        """Compare-and-set write."""
        await self._io()
        self._raise_injected("conditional_write", entity.partition)
        slot = (entity.partition, entity.key)

        async with self._lock:
            if expected_version is not None:
                self._apply_interference(entity.key, entity.partition)

            current = self._lookup(entity.key, entity.partition)
            if expected_version is not None and current is None:
                raise NotFoundError(entity.key, entity.partition)

            current_version = current.version if current is not None else None
            if current_version != expected_version:
                self.stats.writes_rejected[slot] += 1
                return conflict_for(entity, expected_version, current_version)

            doc = StoredDocument(
                type_name=entity.type_name,
                payload=copy.deepcopy(entity.to_document()),
                version=self._next_version(),
                updated_at=int(time.time() * 1000),
            )
            self._partitions[entity.partition].documents[entity.key] = doc
            self.stats.writes_applied[slot] += 1

        logger.debug(
            "Document written",
            extra={"key": entity.key, "partition": entity.partition, "version": doc.version},
        )
        return WriteResult(entity=self._to_entity(entity.key, entity.partition, doc))

    async def query(
        self,
        predicate: Predicate | None = None,
        partition: str | None = None,
    ) -> AsyncIterator[Entity]:
        """Scan one partition or all of them."""
        scopes = [partition] if partition is not None else sorted(self._partitions)
        for scope in scopes:
            await self._io()
            self.stats.scans.append(scope)
            self._raise_injected("query", scope)

            async with self._lock:
                part = self._partitions.get(scope)
                snapshot = list(part.documents.items()) if part else []

            for key, doc in snapshot:
                entity = self._to_entity(key, scope, doc)
                if predicate is None or predicate.matches(entity):
                    yield entity

    async def list_partitions(self) -> list[str]:
        await self._io()
        return sorted(self._partitions)

    async def delete(
        self,
        key: str,
        partition: str,
        expected_version: str | None = None,
    ) -> bool:
        await self._io()
        self._raise_injected("delete", partition)
        async with self._lock:
            doc = self._lookup(key, partition)
            if doc is None:
                return False
            if expected_version is not None and doc.version != expected_version:
                return False
            del self._partitions[partition].documents[key]
            return True

    async def _io(self) -> None:
        # Every call is a suspension point, like a network round trip
        await asyncio.sleep(self.latency)

    def _lookup(self, key: str, partition: str) -> StoredDocument | None:
        part = self._partitions.get(partition)
        if part is None:
            return None
        return part.documents.get(key)

    def _to_entity(self, key: str, partition: str, doc: StoredDocument) -> Entity:
        return Entity.from_document(
            key,
            partition,
            copy.deepcopy(doc.payload),
            type_name=doc.type_name,
            version=doc.version,
            updated_at=doc.updated_at,
            registry=self.registry,
        )

    def _next_version(self) -> str:
        return f"v{next(self._versions)}"

    def _raise_injected(self, operation: str, partition: str) -> None:
        exc = self._failures.get((operation, partition))
        if exc is not None:
            raise exc

    def _apply_interference(self, key: str, partition: str) -> None:
        slot = (partition, key)
        plan = self._interference.get(slot)
        doc = self._lookup(key, partition)
        if plan is None or doc is None:
            return
        if plan.remaining is not None:
            if plan.remaining <= 0:
                del self._interference[slot]
                return
            plan.remaining -= 1

        payload = copy.deepcopy(doc.payload)
        if plan.mutate is not None:
            payload = plan.mutate(payload)
        doc.payload = payload
        doc.version = self._next_version()
        self.stats.interfering_writes[slot] += 1

    # Testing helpers

    def seed(self, entities: Iterable[Entity]) -> list[Entity]:
        """Insert entities directly, bypassing conditional writes (testing helper).

        Returns:
            Stored entities with their version tokens
        """
        stored = []
        for entity in entities:
            doc = StoredDocument(
                type_name=entity.type_name,
                payload=copy.deepcopy(entity.to_document()),
                version=self._next_version(),
                updated_at=int(time.time() * 1000),
            )
            self._partitions[entity.partition].documents[entity.key] = doc
            stored.append(self._to_entity(entity.key, entity.partition, doc))
        return stored

    def fail_partition(
        self,
        partition: str,
        exception: Exception,
        operations: Iterable[str] = ("get_many", "query"),
    ) -> None:
        """Make calls touching `partition` raise `exception` (testing helper)."""
        for operation in operations:
            self._failures[(operation, partition)] = exception

    def clear_failures(self) -> None:
        """Remove all injected failures (testing helper)."""
        self._failures.clear()

    def interfere(
        self,
        key: str,
        partition: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
        times: int | None = None,
    ) -> None:
        """Simulate a competing writer on one document (testing helper).

        Before each conditional update of the document, the competing writer
        commits first (optionally applying `mutate` to the payload), so the
        caller's token is stale. `times=None` interferes forever.
        """
        self._interference[(partition, key)] = _Interference(mutate=mutate, remaining=times)

    def peek(self, key: str, partition: str) -> dict[str, Any] | None:
        """Stored payload without counting a read (testing helper)."""
        doc = self._lookup(key, partition)
        return copy.deepcopy(doc.payload) if doc else None

    def document_count(self, partition: str | None = None) -> int:
        """Number of stored documents (testing helper)."""
        if partition is not None:
            part = self._partitions.get(partition)
            return len(part.documents) if part else 0
        return sum(len(p.documents) for p in self._partitions.values())
