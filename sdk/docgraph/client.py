"""
DocGraph facade.

This module wires the components together around one store:
- ConcurrencyController for safe single-document updates
- ReferenceResolver for batched hydration
- AggregateMaintainer for derived fields
- QueryRouter for partition-aware queries

Example:
    >>> graph = DocGraph(InMemoryDocumentStore(), settings=Settings(max_attempts=5))
    >>> task = await graph.create(Task, "task-1", "t1", {"title": "Ship", "project": "p1"})
    >>> [task] = await graph.hydrate([task], "project")

Invariants:
    - Every component shares the same store, settings and registry
    - The facade holds no per-call state; nothing is cached between calls
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from .aggregates import AggregateMaintainer, RecomputeFn
from .controller import BackoffPolicy, ConcurrencyController, MutateFn
from .config import Settings
from .deadline import Deadline
from .entity import Entity
from .errors import ValidationError
from .hydrator import ReferenceResolver
from .predicates import Predicate
from .registry import SchemaRegistry, get_registry
from .router import QueryPlan, QueryRouter
from .schema import EntityTypeDef
from .store import DocumentStore
from .stores.sqlite import SqliteDocumentStore

logger = logging.getLogger(__name__)


class DocGraph:
    """Entry point for applications.

    Builds a SqliteDocumentStore from settings when no store is given.
    """

    def __init__(
        self,
        store: DocumentStore | None = None,
        *,
        settings: Settings | None = None,
        registry: SchemaRegistry | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        """Initialize the facade.

        Args:
            store: Document store adapter
            settings: Configuration (loaded from environment when omitted)
            registry: Schema registry (process-global default when omitted)
            scopes: Known partitions for fan-out queries (store lookup when omitted)
        """
        self.settings = settings or Settings()
        self.registry = registry if registry is not None else get_registry()
        self.store = store or SqliteDocumentStore(
            self.settings.data_dir,
            registry=self.registry,
            wal_mode=self.settings.sqlite_wal_mode,
            busy_timeout_ms=self.settings.sqlite_busy_timeout_ms,
        )

        self.controller = ConcurrencyController.from_settings(self.store, self.settings)
        self.resolver = ReferenceResolver.from_settings(self.store, self.settings, self.registry)
        self.router = QueryRouter.from_settings(self.store, self.settings, scopes)
        self.aggregates = AggregateMaintainer.from_settings(
            self.controller, self.settings, router=self.router, registry=self.registry
        )
        self.settings.log_config()

    async def create(
        self,
        entity_type: EntityTypeDef | str | None,
        key: str,
        partition: str,
        payload: dict[str, Any],
    ) -> Entity:
        """Create a document that must not exist yet.

        Registered types are validated and get their defaults applied.

        Raises:
            ValidationError: Payload does not match the registered type
            ConflictError: A document with this key already exists
        """
        type_name = entity_type.name if isinstance(entity_type, EntityTypeDef) else entity_type
        type_def = self.registry.get(type_name)
        if isinstance(entity_type, EntityTypeDef) and type_def is None:
            type_def = entity_type

        if type_def is not None:
            known, extra = type_def.split_payload(payload)
            known = type_def.apply_defaults(known)
            valid, errors = type_def.validate_payload(known)
            if not valid:
                raise ValidationError(
                    f"Invalid payload for type '{type_def.name}'",
                    errors=errors,
                )
            payload = {**extra, **known}

        entity = Entity.from_document(
            key, partition, payload, type_name=type_name, registry=self.registry
        )
        result = await self.store.conditional_write(entity, None)
        if not result.ok:
            raise result.error
        logger.debug("Entity created", extra={"key": key, "partition": partition})
        return result.entity

    async def get(self, key: str, partition: str) -> Entity:
        return await self.store.get(key, partition)

    async def get_many(self, keys: list[str], partition: str) -> list[Entity]:
        """Found entities only; missing keys are dropped."""
        found, _missing = await self.store.get_many(keys, partition)
        return found

    async def delete(self, key: str, partition: str, expected_version: str | None = None) -> bool:
        return await self.store.delete(key, partition, expected_version)

    async def update(
        self,
        key: str,
        partition: str,
        mutate_fn: MutateFn,
        *,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        deadline: Deadline | float | None = None,
    ) -> Entity:
        """See ConcurrencyController.update_with_retry."""
        return await self.controller.update_with_retry(
            key, partition, mutate_fn, max_attempts=max_attempts, backoff=backoff, deadline=deadline
        )

    update_with_retry = update

    async def hydrate(
        self,
        entities: Iterable[Entity],
        reference_field: str,
        *,
        allow_partial: bool = False,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        return await self.resolver.hydrate(
            entities, reference_field, allow_partial=allow_partial, deadline=deadline
        )

    async def hydrate_many(
        self,
        entities: Iterable[Entity],
        reference_fields: Sequence[str],
        *,
        allow_partial: bool = False,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        return await self.resolver.hydrate_many(
            entities, reference_fields, allow_partial=allow_partial, deadline=deadline
        )

    async def refresh_aggregate(
        self,
        parent_key: str,
        parent_partition: str,
        recompute_fn: RecomputeFn,
        *,
        deadline: Deadline | float | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> Entity:
        return await self.aggregates.refresh_aggregate(
            parent_key,
            parent_partition,
            recompute_fn,
            deadline=deadline,
            max_attempts=max_attempts,
            backoff=backoff,
        )

    async def apply_delta(
        self,
        parent_key: str,
        parent_partition: str,
        field_name: str,
        delta: int | float,
        *,
        deadline: Deadline | float | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> Entity:
        return await self.aggregates.apply_delta(
            parent_key,
            parent_partition,
            field_name,
            delta,
            deadline=deadline,
            max_attempts=max_attempts,
            backoff=backoff,
        )

    async def route(
        self,
        predicate: Predicate | None,
        scopes: list[str] | None = None,
        *,
        deadline: Deadline | float | None = None,
    ) -> QueryPlan:
        return await self.router.route(predicate, scopes=scopes, deadline=deadline)

    async def query(
        self,
        predicate: Predicate | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        """Route and run a query; see QueryRouter.execute."""
        return await self.router.execute(
            predicate, order_by=order_by, descending=descending, limit=limit, deadline=deadline
        )
