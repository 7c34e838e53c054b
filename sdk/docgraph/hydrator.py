"""
Reference resolver: batched, partition-aware hydration of associations.

Hydration never resolves references one at a time. For a set of owners it:

1. collects every referenced identifier, deduplicated,
2. groups them by partition scope,
3. issues one get_many per scope (split into chunks of max_batch_size),
   all scopes concurrently,
4. attaches copies of the targets to each owner in reference order.

Missing targets are omitted silently. A failed scope leaves the affected
owners un-hydrated with a HydrationFailure marker; the others are hydrated.

Invariants:
    - Persisted reference fields are never modified
    - Targets are copied per owner; no two owners share an instance
    - Nothing is cached between calls
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from .deadline import Deadline, cancel_all, maybe_bound, resolve_deadline
from .entity import Entity, HydrationFailure, Reference
from .errors import DeadlineExceededError, PartialHydrationError, ReferenceLimitError, ValidationError
from .registry import SchemaRegistry
from .store import DocumentStore

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """Hydrates reference fields with batched fetches.

    Attributes:
        store: Document store adapter
        registry: Optional registry; registered owner types must declare the field
        max_references_per_entity: Per-owner, per-field reference limit
        max_batch_size: Maximum keys per get_many call

    Example:
        >>> resolver = ReferenceResolver(store)
        >>> tasks = await resolver.hydrate(tasks, "assignee")
        >>> tasks[0].association("assignee")
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: SchemaRegistry | None = None,
        max_references_per_entity: int = 1000,
        max_batch_size: int = 100,
        default_deadline_ms: int = 0,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.store = store
        self.registry = registry
        self.max_references_per_entity = max_references_per_entity
        self.max_batch_size = max_batch_size
        self.default_deadline_ms = default_deadline_ms

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        settings: Settings,
        registry: SchemaRegistry | None = None,
    ) -> ReferenceResolver:
        return cls(
            store,
            registry=registry,
            max_references_per_entity=settings.max_references_per_entity,
            max_batch_size=settings.max_batch_size,
            default_deadline_ms=settings.default_deadline_ms,
        )

    async def hydrate(
        self,
        entities: Iterable[Entity],
        reference_field: str,
        *,
        allow_partial: bool = False,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        """Populate `associations[reference_field]` on every entity.

        Args:
            entities: Owners to hydrate (returned as the same instances)
            reference_field: Field holding a reference or list of references
            allow_partial: Return instead of raising when a scope fails
            deadline: Deadline or timeout in seconds

        Returns:
            The input entities

        Raises:
            PartialHydrationError: A scope failed and allow_partial is False
            ReferenceLimitError: An owner exceeds max_references_per_entity
            DeadlineExceededError: Deadline expired before all fetches finished
        """
        return await self.hydrate_many(
            entities, [reference_field], allow_partial=allow_partial, deadline=deadline
        )

    async def hydrate_many(
        self,
        entities: Iterable[Entity],
        reference_fields: Sequence[str],
        *,
        allow_partial: bool = False,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        """Hydrate several reference fields with one batched fetch per scope."""
        owners = list(entities)
        if not owners or not reference_fields:
            return owners
        dl = resolve_deadline(deadline, self.default_deadline_ms)

        # Collect before fetching so limit violations cost no reads
        refs_by_owner: list[dict[str, list[Reference]]] = []
        wanted: dict[str, dict[str, None]] = {}
        for owner in owners:
            per_field: dict[str, list[Reference]] = {}
            for name in reference_fields:
                refs = self._collect(owner, name)
                per_field[name] = refs
                for ref in refs:
                    wanted.setdefault(ref.partition, {})[ref.key] = None
            refs_by_owner.append(per_field)

        fetched, failures = await self._fetch_all(
            {scope: list(keys) for scope, keys in wanted.items()}, dl
        )

        for owner, per_field in zip(owners, refs_by_owner):
            for name, refs in per_field.items():
                failed = sorted({r.partition for r in refs if r.partition in failures})
                if failed:
                    owner.associations.pop(name, None)
                    owner.hydration_errors[name] = HydrationFailure(
                        reference_field=name,
                        scopes=failed,
                        error=str(failures[failed[0]]),
                    )
                    continue
                owner.hydration_errors.pop(name, None)
                owner.associations[name] = [
                    fetched[(r.partition, r.key)].copy()
                    for r in refs
                    if (r.partition, r.key) in fetched
                ]

        if failures:
            failed_scopes = sorted(failures)
            label = ", ".join(reference_fields)
            logger.warning(
                "Partial hydration",
                extra={"reference_field": label, "failed_scopes": failed_scopes},
            )
            if not allow_partial:
                raise PartialHydrationError(label, failed_scopes, owners, errors=failures)

        return owners

    def _collect(self, owner: Entity, reference_field: str) -> list[Reference]:
        if self.registry is not None:
            entity_type = self.registry.get(owner.type_name)
            if entity_type is not None:
                entity_type.get_reference(reference_field)

        try:
            refs = owner.references(reference_field)
        except ValueError as e:
            raise ValidationError(
                f"Invalid reference in '{reference_field}' on '{owner.key}': {e}",
                field_name=reference_field,
            ) from e

        if len(refs) > self.max_references_per_entity:
            raise ReferenceLimitError(
                owner.key, reference_field, len(refs), self.max_references_per_entity
            )
        return refs

    async def _fetch_all(
        self,
        wanted: dict[str, list[str]],
        deadline: Deadline | None,
    ) -> tuple[dict[tuple[str, str], Entity], dict[str, BaseException]]:
        """Fetch every scope concurrently; failures are reported per scope."""
        scopes = list(wanted)
        results = await asyncio.gather(
            *(self._fetch_scope(scope, wanted[scope], deadline) for scope in scopes),
            return_exceptions=True,
        )

        fetched: dict[tuple[str, str], Entity] = {}
        failures: dict[str, BaseException] = {}
        for scope, result in zip(scopes, results):
            if isinstance(result, DeadlineExceededError):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures[scope] = result
                continue
            for entity in result:
                fetched[(scope, entity.key)] = entity
        return fetched, failures

    async def _fetch_scope(
        self,
        scope: str,
        keys: list[str],
        deadline: Deadline | None,
    ) -> list[Entity]:
        chunks = [
            keys[i : i + self.max_batch_size] for i in range(0, len(keys), self.max_batch_size)
        ]
        logger.debug(
            "Batched fetch",
            extra={"partition": scope, "keys": len(keys), "batches": len(chunks)},
        )
        tasks = [
            asyncio.ensure_future(
                maybe_bound(deadline, self.store.get_many(chunk, scope), "hydrate", partition=scope)
            )
            for chunk in chunks
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # A failed chunk fails the scope; stop the rest
            await cancel_all(tasks)
            raise
        found: list[Entity] = []
        for entities, _missing in results:
            found.extend(entities)
        return found
