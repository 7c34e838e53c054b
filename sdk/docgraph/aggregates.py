"""
Aggregate maintainer: keeps derived fields on parent documents correct.

Two strategies, configured per field:

- recompute-from-source (default): re-query the children inside every
  attempt and overwrite the aggregate. Self-correcting, costs a query per
  attempt.
- incremental-delta: add a known delta to the value read in the same
  attempt. Cheap, but only allowed on fields explicitly configured for it.

Both go through the concurrency controller, so a refresh commits only if
the parent did not change between its read and its write.

Invariants:
    - Aggregate writes are all-or-nothing; a failed refresh leaves the last
      committed value in place
    - Every refresh issues a write, even when the value is unchanged
    - ConcurrencyExhaustedError surfaces as AggregateStaleError
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from numbers import Number
from typing import TYPE_CHECKING, Any, Union

from .controller import BackoffPolicy, ConcurrencyController
from .deadline import Deadline, resolve_deadline
from .entity import Entity
from .errors import (
    AggregatePolicyError,
    AggregateStaleError,
    ConcurrencyExhaustedError,
    UnknownFieldError,
    ValidationError,
)
from .predicates import Predicate
from .registry import SchemaRegistry
from .router import QueryRouter
from .schema import RecomputeStrategy

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

RecomputeFn = Callable[[Entity], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]]
ChildFilter = Union[Predicate, Callable[[Entity], Predicate]]


def _accepts_deadline(fn: Callable[..., Any]) -> bool:
    try:
        return "deadline" in inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False


class AggregateMaintainer:
    """Refreshes aggregate fields through the concurrency controller.

    Strategy lookup order for a field: explicit configure() call for the
    parent's type, then for any type, then the registry's AggregateDef,
    then recompute-from-source.

    Example:
        >>> maintainer = AggregateMaintainer(controller, router)
        >>> await maintainer.refresh_aggregate(
        ...     "project-1", "t1",
        ...     maintainer.count_children("open_count", lambda p: where("project") == p.key),
        ... )
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        router: QueryRouter | None = None,
        registry: SchemaRegistry | None = None,
        strategies: Mapping[str, RecomputeStrategy | str] | None = None,
    ) -> None:
        """Initialize the maintainer.

        Args:
            controller: Concurrency controller used for every write
            router: Query router used by the child helpers
            registry: Optional registry carrying AggregateDefs
            strategies: Per-field strategies keyed by "field" or "Type.field"
        """
        self.controller = controller
        self.router = router
        self.registry = registry
        self._strategies: dict[tuple[str | None, str], RecomputeStrategy] = {}
        for name, strategy in (strategies or {}).items():
            type_name, _, field_name = name.rpartition(".")
            self.configure(field_name, strategy, type_name=type_name or None)

    @classmethod
    def from_settings(
        cls,
        controller: ConcurrencyController,
        settings: Settings,
        router: QueryRouter | None = None,
        registry: SchemaRegistry | None = None,
    ) -> AggregateMaintainer:
        return cls(
            controller,
            router=router,
            registry=registry,
            strategies=settings.aggregate_strategies,
        )

    def configure(
        self,
        field_name: str,
        strategy: RecomputeStrategy | str,
        type_name: str | None = None,
    ) -> None:
        """Set the strategy for a field, optionally only on one type."""
        if isinstance(strategy, str):
            strategy = RecomputeStrategy.from_str(strategy)
        self._strategies[(type_name, field_name)] = strategy

    def strategy_for(self, type_name: str | None, field_name: str) -> RecomputeStrategy:
        for slot in ((type_name, field_name), (None, field_name)):
            if slot in self._strategies:
                return self._strategies[slot]
        if self.registry is not None:
            entity_type = self.registry.get(type_name)
            if entity_type is not None:
                agg = entity_type.get_aggregate(field_name)
                if agg is not None:
                    return agg.strategy
        return RecomputeStrategy.RECOMPUTE_FROM_SOURCE

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
        """Recompute aggregate fields from source and commit them.

        Args:
            parent_key: Parent document key
            parent_partition: Parent partition scope
            recompute_fn: Maps the freshly read parent to {field: value};
                re-run on every attempt. Receives the call's Deadline (or None)
                as `deadline` when it declares that parameter.
            deadline: Deadline or timeout in seconds
            max_attempts: Override for the controller's attempt limit
            backoff: Override for the controller's backoff policy

        Returns:
            The committed parent

        Raises:
            AggregateStaleError: Retries exhausted; last committed value stands
        """
        dl = resolve_deadline(deadline, self.controller.default_deadline_ms)
        pass_deadline = _accepts_deadline(recompute_fn)

        async def mutate(parent: Entity) -> Entity:
            if pass_deadline:
                values = recompute_fn(parent, deadline=dl)
            else:
                values = recompute_fn(parent)
            if inspect.isawaitable(values):
                values = await values
            self._check_fields(parent, values)
            return parent.evolve(**values)

        return await self._commit(parent_key, parent_partition, mutate, dl, max_attempts, backoff)

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
        """Add `delta` to an incremental-delta field.

        Raises:
            AggregatePolicyError: The field is not configured for incremental deltas
            ValidationError: The stored value is not numeric
            AggregateStaleError: Retries exhausted; last committed value stands
        """

        def mutate(parent: Entity) -> Entity:
            strategy = self.strategy_for(parent.type_name, field_name)
            if strategy is not RecomputeStrategy.INCREMENTAL_DELTA:
                raise AggregatePolicyError(field_name, parent.type_name, strategy.value)
            self._check_fields(parent, {field_name: delta})

            current = parent.get(field_name)
            if current is None:
                current = 0
            if isinstance(current, bool) or not isinstance(current, Number):
                raise ValidationError(
                    f"Aggregate '{field_name}' on '{parent.key}' is not numeric: {current!r}",
                    field_name=field_name,
                )
            return parent.evolve(**{field_name: current + delta})

        return await self._commit(
            parent_key, parent_partition, mutate, deadline, max_attempts, backoff
        )

    async def _commit(
        self,
        parent_key: str,
        parent_partition: str,
        mutate: Callable[[Entity], Any],
        deadline: Deadline | float | None,
        max_attempts: int | None,
        backoff: BackoffPolicy | None,
    ) -> Entity:
        try:
            return await self.controller.update_with_retry(
                parent_key,
                parent_partition,
                mutate,
                max_attempts=max_attempts,
                backoff=backoff,
                deadline=deadline,
            )
        except ConcurrencyExhaustedError as e:
            logger.warning(
                "Aggregate refresh abandoned, keeping last committed value",
                extra={"key": parent_key, "partition": parent_partition, "attempts": e.attempts},
            )
            raise AggregateStaleError(
                parent_key, parent_partition, e.attempts, e.last_state
            ) from e

    def _check_fields(self, parent: Entity, values: Mapping[str, Any]) -> None:
        if self.registry is None:
            return
        entity_type = self.registry.get(parent.type_name)
        if entity_type is None:
            return
        known = entity_type.get_field_names()
        for name in values:
            if name not in known:
                raise UnknownFieldError(name, entity_type.name)

    # Recompute helpers

    def _require_router(self) -> QueryRouter:
        if self.router is None:
            raise ValueError("AggregateMaintainer needs a QueryRouter for child helpers")
        return self.router

    def count_children(
        self,
        field_name: str,
        children: ChildFilter,
        *,
        scopes: list[str] | None = None,
    ) -> RecomputeFn:
        """recompute_fn setting `field_name` to the number of matching children.

        Args:
            field_name: Aggregate field on the parent
            children: Predicate, or function of the parent returning one
            scopes: Fan-out scopes when the predicate does not pin a partition
        """
        router = self._require_router()

        async def recompute(parent: Entity, deadline: Deadline | None = None) -> dict[str, Any]:
            matched = await _query_children(router, parent, children, scopes, deadline)
            return {field_name: len(matched)}

        return recompute

    def sum_children(
        self,
        field_name: str,
        source_field: str,
        children: ChildFilter,
        *,
        scopes: list[str] | None = None,
    ) -> RecomputeFn:
        """recompute_fn summing `source_field` over matching children (None counts as 0)."""
        router = self._require_router()

        async def recompute(parent: Entity, deadline: Deadline | None = None) -> dict[str, Any]:
            matched = await _query_children(router, parent, children, scopes, deadline)
            total = 0
            for child in matched:
                value = child.get(source_field)
                if value is not None:
                    total += value
            return {field_name: total}

        return recompute


async def _query_children(
    router: QueryRouter,
    parent: Entity,
    children: ChildFilter,
    scopes: list[str] | None,
    deadline: Deadline | None,
) -> list[Entity]:
    predicate = children if isinstance(children, Predicate) else children(parent)
    plan = await router.route(predicate, scopes=scopes, deadline=deadline)
    return await router.execute(predicate, plan=plan, deadline=deadline)
