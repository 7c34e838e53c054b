"""
Partition-aware query router.

route() inspects a predicate for constraints on the partition key:

    where("tenantId") == "t1"                  -> SinglePartitionPlan("t1")
    (where("tenantId") == "t1") & (...)        -> SinglePartitionPlan("t1")
    where("tenantId").in_(["t1", "t2"])        -> FanOutPlan(("t1", "t2"), targeted=True)
    anything else                              -> FanOutPlan(all known scopes)

execute() runs a plan. Fan-out queries run one scan per scope concurrently,
sort each scope's results and k-way merge them client-side.

Invariants:
    - Only top-level terms (or terms of a top-level AND) can target a scope
    - A fan-out fails as a whole if any scope fails
    - Fan-outs wider than max_fanout_partitions are rejected before any scan
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from .deadline import Deadline, cancel_all, maybe_bound, resolve_deadline
from .entity import Entity
from .errors import ValidationError
from .predicates import PARTITION_PATH, Comparison, Predicate, conjuncts, resolve_path
from .store import DocumentStore

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SinglePartitionPlan:
    """Query touches exactly one partition."""

    scope: str


@dataclass(frozen=True)
class FanOutPlan:
    """Query touches several partitions.

    Attributes:
        scopes: Partitions to scan, in order
        targeted: True when the scopes came from an in_ on the partition key
    """

    scopes: tuple[str, ...]
    targeted: bool = False


QueryPlan = Union[SinglePartitionPlan, FanOutPlan]


def _ordering_value(value: Any) -> tuple[Any, ...]:
    """Rank values by type so mixed documents never compare int with str."""
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, type(value).__name__, repr(value))


def _sort_key(field_path: str, descending: bool = False):
    """Sort key for `field_path`; missing values go last in either direction.

    Numbers order before strings, strings before other types.
    """

    def key(entity: Entity) -> tuple[Any, ...]:
        value = resolve_path(entity, field_path)
        if value is None:
            return (not descending, (), entity.partition, entity.key)
        return (descending, _ordering_value(value), entity.partition, entity.key)

    return key


class QueryRouter:
    """Plans and executes queries over a partitioned store.

    Attributes:
        store: Document store adapter
        partition_key: Field whose value equals the document's partition
        scopes: Known partitions; None means ask the store
        max_fanout_partitions: Upper bound on scopes per fan-out

    Example:
        >>> router = QueryRouter(store, partition_key="tenantId")
        >>> plan = await router.route(where("tenantId") == "t1")
        >>> plan
        SinglePartitionPlan(scope='t1')
    """

    def __init__(
        self,
        store: DocumentStore,
        partition_key: str = "tenantId",
        scopes: list[str] | None = None,
        max_fanout_partitions: int = 256,
        default_deadline_ms: int = 0,
    ) -> None:
        self.store = store
        self.partition_key = partition_key
        self.scopes = list(scopes) if scopes is not None else None
        self.max_fanout_partitions = max_fanout_partitions
        self.default_deadline_ms = default_deadline_ms

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        settings: Settings,
        scopes: list[str] | None = None,
    ) -> QueryRouter:
        return cls(
            store,
            partition_key=settings.partition_key,
            scopes=scopes,
            max_fanout_partitions=settings.max_fanout_partitions,
            default_deadline_ms=settings.default_deadline_ms,
        )

    def _is_partition_term(self, term: Predicate) -> bool:
        return isinstance(term, Comparison) and term.field_path in (
            self.partition_key,
            PARTITION_PATH,
        )

    async def route(
        self,
        predicate: Predicate | None,
        scopes: list[str] | None = None,
        *,
        deadline: Deadline | float | None = None,
    ) -> QueryPlan:
        """Choose a plan for `predicate`.

        Args:
            predicate: Query predicate (None matches everything)
            scopes: Scopes to fan out over instead of all known partitions
            deadline: Bounds the partition lookup when scopes come from the store

        Raises:
            ValidationError: The fan-out would exceed max_fanout_partitions
            DeadlineExceededError: Deadline expired during the partition lookup
        """
        terms = conjuncts(predicate) if predicate is not None else []

        for term in terms:
            if self._is_partition_term(term) and term.op == "==":
                return SinglePartitionPlan(scope=str(term.value))

        for term in terms:
            if self._is_partition_term(term) and term.op == "IN":
                targeted = tuple(dict.fromkeys(str(v) for v in term.value))
                return self._fan_out(targeted, targeted=True)

        if scopes is None:
            if self.scopes is not None:
                scopes = self.scopes
            else:
                dl = resolve_deadline(deadline, self.default_deadline_ms)
                scopes = await maybe_bound(dl, self.store.list_partitions(), "route")
        return self._fan_out(tuple(scopes))

    def _fan_out(self, scopes: tuple[str, ...], targeted: bool = False) -> FanOutPlan:
        if len(scopes) > self.max_fanout_partitions:
            raise ValidationError(
                f"Query would fan out to {len(scopes)} partitions "
                f"(limit {self.max_fanout_partitions})",
                code="FANOUT_LIMIT",
            )
        return FanOutPlan(scopes=scopes, targeted=targeted)

    async def execute(
        self,
        predicate: Predicate | None = None,
        *,
        plan: QueryPlan | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        deadline: Deadline | float | None = None,
    ) -> list[Entity]:
        """Run a query.

        Args:
            predicate: Filter (None matches everything)
            plan: Precomputed plan; routed from `predicate` when omitted
            order_by: Field path to sort by (missing values sort last)
            descending: Reverse sort order
            limit: Maximum results after merging
            deadline: Deadline or timeout in seconds

        Returns:
            Matching entities, merged across scopes

        Raises:
            DeadlineExceededError: Deadline expired before all scans finished
            StoreError: Any scope failed
        """
        dl = resolve_deadline(deadline, self.default_deadline_ms)
        if plan is None:
            plan = await self.route(predicate, deadline=dl)

        if isinstance(plan, SinglePartitionPlan):
            results = await self._collect(plan.scope, predicate, order_by, descending, dl)
            return results[:limit] if limit is not None else results

        logger.debug("Fan-out query", extra={"scopes": len(plan.scopes), "targeted": plan.targeted})
        tasks = [
            asyncio.ensure_future(self._collect(scope, predicate, order_by, descending, dl))
            for scope in plan.scopes
        ]
        try:
            per_scope = await asyncio.gather(*tasks)
        except BaseException:
            await cancel_all(tasks)
            raise

        if order_by is not None:
            merged = heapq.merge(
                *per_scope, key=_sort_key(order_by, descending), reverse=descending
            )
        else:
            merged = itertools.chain.from_iterable(per_scope)
        return list(itertools.islice(merged, limit))

    async def _collect(
        self,
        scope: str,
        predicate: Predicate | None,
        order_by: str | None,
        descending: bool,
        deadline: Deadline | None,
    ) -> list[Entity]:
        async def scan() -> list[Entity]:
            return [entity async for entity in self.store.query(predicate, partition=scope)]

        results = await maybe_bound(deadline, scan(), "query", partition=scope)
        if order_by is not None:
            results.sort(key=_sort_key(order_by, descending), reverse=descending)
        return results
