"""
Error types for docgraph.

This module defines all exception types raised by the library:
- DocGraphError: Base exception
- NotFoundError: Document absent from the store
- ConflictError: Version token mismatch on a conditional write
- ConcurrencyExhaustedError: Conflict retries exhausted
- AggregateStaleError: Aggregate refresh gave up; last committed value stands
- PartialHydrationError: One or more partition groups failed during hydration
- DeadlineExceededError: Operation deadline expired
- StoreError: Any other store failure (connection, permission, serialization)
- ValidationError: Payload or limit validation failures

Invariants:
    - All errors inherit from DocGraphError
    - Errors include key, partition and attempt context for debugging
    - ConflictError is carried as a value in WriteResult, never raised by stores
    - Store errors are never reinterpreted as conflicts
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .controller import ConflictRecord
    from .entity import Entity


class ErrorKind(Enum):
    """Error taxonomy used for programmatic handling."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONCURRENCY_EXHAUSTED = "concurrency_exhausted"
    AGGREGATE_STALE = "aggregate_stale"
    PARTIAL_HYDRATION = "partial_hydration"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    VALIDATION = "validation"
    OTHER = "other"


class DocGraphError(Exception):
    """Base exception for all docgraph errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    kind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCGRAPH_ERROR"
        self.details = details or {}


class NotFoundError(DocGraphError):
    """Document not found.

    Raised when:
    - A point read targets a key absent from its partition
    - A conditional write targets a document deleted since it was read

    Never retried by the concurrency controller.
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        key: str,
        partition: str,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Document '{key}' not found in partition '{partition}'",
            code="NOT_FOUND",
            details={"key": key, "partition": partition},
        )
        self.key = key
        self.partition = partition


class ConflictError(DocGraphError):
    """Version token mismatch on a conditional write.

    Stores return this inside a WriteResult instead of raising it; the
    concurrency controller inspects the result and retries.

    Attributes:
        key: Document key
        partition: Partition scope
        expected_version: Token the writer held
        current_version: Token the store holds (None if the document is gone)
    """

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        key: str,
        partition: str,
        expected_version: str | None,
        current_version: str | None,
    ) -> None:
        super().__init__(
            f"Version conflict on '{key}' in partition '{partition}': "
            f"expected {expected_version}, found {current_version}",
            code="CONFLICT",
            details={
                "key": key,
                "partition": partition,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.key = key
        self.partition = partition
        self.expected_version = expected_version
        self.current_version = current_version


class ConcurrencyExhaustedError(DocGraphError):
    """Conflict retries exhausted.

    Attributes:
        key: Document key
        partition: Partition scope
        attempts: Number of conditional writes issued
        last_state: Last state observed before giving up
        conflicts: Conflict records collected during the loop
    """

    kind = ErrorKind.CONCURRENCY_EXHAUSTED

    def __init__(
        self,
        key: str,
        partition: str,
        attempts: int,
        last_state: Entity | None,
        conflicts: list[ConflictRecord] | None = None,
    ) -> None:
        super().__init__(
            f"Gave up updating '{key}' in partition '{partition}' "
            f"after {attempts} conflicting attempts",
            code="CONCURRENCY_EXHAUSTED",
            details={
                "key": key,
                "partition": partition,
                "attempts": attempts,
                "last_version": last_state.version if last_state else None,
            },
        )
        self.key = key
        self.partition = partition
        self.attempts = attempts
        self.last_state = last_state
        self.conflicts = conflicts or []


class AggregateStaleError(DocGraphError):
    """Aggregate refresh could not commit.

    The parent document keeps serving its last successfully committed
    aggregate value. The underlying ConcurrencyExhaustedError is chained
    as __cause__.
    """

    kind = ErrorKind.AGGREGATE_STALE

    def __init__(
        self,
        key: str,
        partition: str,
        attempts: int,
        last_state: Entity | None,
    ) -> None:
        super().__init__(
            f"Aggregate on '{key}' in partition '{partition}' is stale: "
            f"refresh abandoned after {attempts} attempts",
            code="AGGREGATE_STALE",
            details={"key": key, "partition": partition, "attempts": attempts},
        )
        self.key = key
        self.partition = partition
        self.attempts = attempts
        self.last_state = last_state


class PartialHydrationError(DocGraphError):
    """One or more partition groups failed during batched resolution.

    Attributes:
        failed_scopes: Partitions whose batched fetch failed
        entities: Input entities, hydrated where their groups succeeded
        errors: Underlying exception per failed scope
    """

    kind = ErrorKind.PARTIAL_HYDRATION

    def __init__(
        self,
        reference_field: str,
        failed_scopes: list[str],
        entities: list[Entity],
        errors: dict[str, BaseException] | None = None,
    ) -> None:
        super().__init__(
            f"Hydration of '{reference_field}' failed for partitions: "
            f"{', '.join(failed_scopes)}",
            code="PARTIAL_HYDRATION",
            details={"reference_field": reference_field, "failed_scopes": failed_scopes},
        )
        self.reference_field = reference_field
        self.failed_scopes = failed_scopes
        self.entities = entities
        self.errors = errors or {}


class DeadlineExceededError(DocGraphError):
    """Operation deadline expired.

    When raised by the concurrency controller, no write from the
    interrupted call has committed.
    """

    kind = ErrorKind.DEADLINE_EXCEEDED

    def __init__(
        self,
        operation: str,
        key: str | None = None,
        partition: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(
            f"Deadline exceeded during {operation}",
            code="DEADLINE_EXCEEDED",
            details={
                "operation": operation,
                "key": key,
                "partition": partition,
                "attempts": attempts,
            },
        )
        self.operation = operation
        self.key = key
        self.partition = partition
        self.attempts = attempts


class StoreError(DocGraphError):
    """Store failure that is not a conflict and not a missing document.

    Raised when:
    - The backend is unreachable or busy
    - The actor lacks permission
    - A document cannot be serialized or decoded
    """

    kind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        key: str | None = None,
        partition: str | None = None,
        code: str = "STORE_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"key": key, "partition": partition},
        )
        self.key = key
        self.partition = partition


class StoreConnectionError(StoreError):
    """Backend unreachable, busy or timed out."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        partition: str | None = None,
    ) -> None:
        super().__init__(message, key=key, partition=partition, code="CONNECTION_ERROR")


class AccessDeniedError(StoreError):
    """Caller lacks permission on the partition or document."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        partition: str | None = None,
    ) -> None:
        super().__init__(message, key=key, partition=partition, code="ACCESS_DENIED")


class SerializationError(StoreError):
    """Document could not be encoded or decoded."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        partition: str | None = None,
    ) -> None:
        super().__init__(message, key=key, partition=partition, code="SERIALIZATION_ERROR")


class ValidationError(DocGraphError):
    """Payload or request validation failed.

    Raised when:
    - Required field is missing
    - Field value has wrong type
    - A configured limit is exceeded
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class UnknownFieldError(ValidationError):
    """Unknown field referenced for an entity type.

    Includes suggestions for similar field names.

    Attributes:
        field_name: The unknown field
        type_name: The entity type
        suggestions: Similar field names
    """

    def __init__(
        self,
        field_name: str,
        type_name: str,
        suggestions: list[str] | None = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in type '{type_name}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(msg, field_name=field_name, code="UNKNOWN_FIELD")
        self.details["type_name"] = type_name
        self.details["suggestions"] = suggestions
        self.type_name = type_name
        self.suggestions = suggestions


class ReferenceLimitError(ValidationError):
    """An entity holds more references than the configured limit."""

    def __init__(
        self,
        key: str,
        reference_field: str,
        count: int,
        limit: int,
    ) -> None:
        super().__init__(
            f"Entity '{key}' has {count} references in '{reference_field}' "
            f"(limit {limit})",
            field_name=reference_field,
            code="REFERENCE_LIMIT",
        )
        self.details.update({"key": key, "count": count, "limit": limit})
        self.key = key
        self.count = count
        self.limit = limit


class AggregatePolicyError(ValidationError):
    """Incremental delta requested on a field that must be recomputed."""

    def __init__(self, field_name: str, type_name: str | None, strategy: str) -> None:
        super().__init__(
            f"Field '{field_name}' on type '{type_name}' uses strategy '{strategy}'; "
            "incremental deltas are only allowed on incremental-delta fields",
            field_name=field_name,
            code="AGGREGATE_POLICY",
        )
        self.details.update({"type_name": type_name, "strategy": strategy})
        self.type_name = type_name
        self.strategy = strategy
