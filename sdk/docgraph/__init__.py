"""
docgraph - relationship hydration and aggregate maintenance for document stores.

This package sits between application code and a partitioned, join-less
document store:
- Entity types and a schema registry (EntityTypeDef, field, aggregate)
- ReferenceResolver: batched, partition-aware hydration of references
- ConcurrencyController: version-token optimistic updates with retry
- AggregateMaintainer: concurrency-safe derived fields
- QueryRouter: single-partition vs fan-out query planning
- DocGraph: facade wiring all of the above

Example:
    >>> from docgraph import DocGraph, EntityTypeDef, field, aggregate, where
    >>> from docgraph.stores import InMemoryDocumentStore
    >>>
    >>> Project = EntityTypeDef(
    ...     name="Project",
    ...     fields=(field("tenantId", "str"), field("open_count", "int", default=0)),
    ...     aggregates=(aggregate("open_count"),),
    ... )
    >>> graph = DocGraph(InMemoryDocumentStore())
    >>> await graph.refresh_aggregate(
    ...     "p1", "t1",
    ...     graph.aggregates.count_children(
    ...         "open_count", lambda p: (where("project") == p.key) & (where("status") == "open")
    ...     ),
    ... )

Invariants:
    - Only conflicts are retried; every other store error surfaces immediately
    - Hydrated associations are never persisted and never cached
    - Aggregates keep their last committed value when a refresh fails

Version: 1.0.0
"""

__version__ = "1.0.0"

from .aggregates import AggregateMaintainer
from .client import DocGraph
from .config import Settings
from .controller import (
    ConcurrencyController,
    ConflictRecord,
    FixedDelay,
    NoBackoff,
    RandomizedJitter,
)
from .deadline import Deadline
from .entity import Entity, HydrationFailure, Reference
from .errors import (
    AccessDeniedError,
    AggregatePolicyError,
    AggregateStaleError,
    ConcurrencyExhaustedError,
    ConflictError,
    DeadlineExceededError,
    DocGraphError,
    ErrorKind,
    NotFoundError,
    PartialHydrationError,
    ReferenceLimitError,
    SerializationError,
    StoreConnectionError,
    StoreError,
    UnknownFieldError,
    ValidationError,
)
from .hydrator import ReferenceResolver
from .predicates import Predicate, match_all, where
from .registry import SchemaRegistry, get_registry, register_entity_type, reset_registry
from .router import FanOutPlan, QueryRouter, SinglePartitionPlan
from .schema import (
    AggregateDef,
    EntityTypeDef,
    FieldDef,
    FieldKind,
    RecomputeStrategy,
    aggregate,
    field,
)
from .store import DocumentStore, WriteResult

__all__ = [
    # Facade
    "DocGraph",
    "Settings",
    # Components
    "AggregateMaintainer",
    "ConcurrencyController",
    "QueryRouter",
    "ReferenceResolver",
    # Backoff
    "ConflictRecord",
    "FixedDelay",
    "NoBackoff",
    "RandomizedJitter",
    # Data model
    "Deadline",
    "DocumentStore",
    "Entity",
    "HydrationFailure",
    "Reference",
    "WriteResult",
    # Plans and predicates
    "FanOutPlan",
    "Predicate",
    "SinglePartitionPlan",
    "match_all",
    "where",
    # Schema
    "AggregateDef",
    "EntityTypeDef",
    "FieldDef",
    "FieldKind",
    "RecomputeStrategy",
    "SchemaRegistry",
    "aggregate",
    "field",
    "get_registry",
    "register_entity_type",
    "reset_registry",
    # Errors
    "AccessDeniedError",
    "AggregatePolicyError",
    "AggregateStaleError",
    "ConcurrencyExhaustedError",
    "ConflictError",
    "DeadlineExceededError",
    "DocGraphError",
    "ErrorKind",
    "NotFoundError",
    "PartialHydrationError",
    "ReferenceLimitError",
    "SerializationError",
    "StoreConnectionError",
    "StoreError",
    "UnknownFieldError",
    "ValidationError",
]
