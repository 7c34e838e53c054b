"""
Version-token concurrency controller.

The controller turns a pure mutation into a safe update of one document:

    read (fresh token) -> mutate copy -> conditional write -> retry on conflict

Invariants:
    - Every attempt starts with a fresh read; tokens are never cached
    - A conflict is inspected as a WriteResult value, never caught as an exception
    - Only conflicts are retried; every other error surfaces immediately
    - On success exactly one write from this call is durable
    - DeadlineExceededError means no write from this call committed

How to change safely:
    - mutate_fn may run several times; never call it outside the loop
    - Reads and mutate_fn may be cut off at the deadline; an issued write never is
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Union

from .deadline import Deadline, maybe_bound, resolve_deadline
from .entity import Entity
from .errors import ConcurrencyExhaustedError, ValidationError
from .store import DocumentStore

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

MutateFn = Callable[[Entity], Union[Entity, Awaitable[Entity]]]


@dataclass(frozen=True)
class ConflictRecord:
    """One rejected conditional write.

    Attributes:
        operation: Operation identity (partition/key)
        attempt: 1-based attempt number that conflicted
        stale_version: Token the write expected
        current_version: Token the store held instead
    """

    operation: str
    attempt: int
    stale_version: str | None
    current_version: str | None


class BackoffPolicy(Protocol):
    """Delay between conflicting attempts."""

    def delay_seconds(self, attempt: int) -> float: ...


@dataclass(frozen=True)
class NoBackoff:
    """Retry immediately."""

    def delay_seconds(self, attempt: int) -> float:
        return 0.0


@dataclass(frozen=True)
class FixedDelay:
    """Sleep a constant number of milliseconds between attempts."""

    ms: int

    def __post_init__(self) -> None:
        if self.ms < 0:
            raise ValueError("FixedDelay.ms must be >= 0")

    def delay_seconds(self, attempt: int) -> float:
        return self.ms / 1000.0


@dataclass(frozen=True)
class RandomizedJitter:
    """Sleep a uniformly random delay in [min_ms, max_ms].

    Spreads out writers that collided on the same document so they do not
    collide again in lockstep.
    """

    min_ms: int
    max_ms: int
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.min_ms < 0 or self.max_ms < self.min_ms:
            raise ValueError("RandomizedJitter requires 0 <= min_ms <= max_ms")

    def delay_seconds(self, attempt: int) -> float:
        return self.rng.uniform(self.min_ms, self.max_ms) / 1000.0


async def _call_mutate(mutate_fn: MutateFn, current: Entity) -> Entity:
    result = mutate_fn(current)
    if inspect.isawaitable(result):
        result = await result
    return result


class ConcurrencyController:
    """Read-modify-conditional-write loop with bounded retries.

    Attributes:
        store: Document store adapter
        max_attempts: Default number of conditional writes before giving up
        backoff: Default policy applied between conflicting attempts
        default_deadline_ms: Deadline applied when a call passes none (0 = none)

    Example:
        >>> controller = ConcurrencyController(store, max_attempts=5)
        >>> updated = await controller.update_with_retry(
        ...     "project-1", "t1", lambda p: p.evolve(open_count=p["open_count"] + 1)
        ... )
    """

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        default_deadline_ms: int = 0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff: BackoffPolicy = backoff or NoBackoff()
        self.default_deadline_ms = default_deadline_ms

    @classmethod
    def from_settings(cls, store: DocumentStore, settings: Settings) -> ConcurrencyController:
        return cls(
            store,
            max_attempts=settings.max_attempts,
            backoff=settings.backoff_policy(),
            default_deadline_ms=settings.default_deadline_ms,
        )

    async def update_with_retry(
        self,
        key: str,
        partition: str,
        mutate_fn: MutateFn,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        deadline: Deadline | float | None = None,
    ) -> Entity:
        """Apply `mutate_fn` to a document under optimistic concurrency.

        Args:
            key: Document key
            partition: Partition scope
            mutate_fn: Pure function (sync or async) from a detached copy of the
                current state to the new state. May run more than once.
            max_attempts: Override for the number of conditional writes
            backoff: Override for the backoff policy
            deadline: Deadline or timeout in seconds

        Returns:
            The stored entity carrying its new version token

        Raises:
            ConcurrencyExhaustedError: Every attempt conflicted
            DeadlineExceededError: Deadline expired; nothing was written
            NotFoundError: Document absent (not retried)
            StoreError: Any other store failure (not retried)
        """
        limit = max_attempts if max_attempts is not None else self.max_attempts
        if limit < 1:
            raise ValueError("max_attempts must be >= 1")
        policy = backoff if backoff is not None else self.backoff
        dl = resolve_deadline(deadline, self.default_deadline_ms)

        operation = f"{partition}/{key}"
        conflicts: list[ConflictRecord] = []
        attempt = 0

        while True:
            if dl is not None:
                dl.check("read", key=key, partition=partition, attempts=attempt)
            current = await maybe_bound(
                dl, self.store.get(key, partition), "read", key, partition, attempt
            )

            # mutate_fn is bounded like a read
            proposed = await maybe_bound(
                dl, _call_mutate(mutate_fn, current.copy()), "mutate", key, partition, attempt
            )
            self._check_proposed(proposed, key, partition)

            if dl is not None:
                dl.check("write", key=key, partition=partition, attempts=attempt)

            attempt += 1
            result = await self.store.conditional_write(proposed, current.version)

            if result.ok:
                logger.debug(
                    "Conditional write committed",
                    extra={
                        "key": key,
                        "partition": partition,
                        "attempt": attempt,
                        "version": result.version,
                    },
                )
                return result.entity

            conflict = result.error
            conflicts.append(
                ConflictRecord(
                    operation=operation,
                    attempt=attempt,
                    stale_version=conflict.expected_version,
                    current_version=conflict.current_version,
                )
            )
            logger.debug(
                "Version conflict, retrying",
                extra={
                    "key": key,
                    "partition": partition,
                    "attempt": attempt,
                    "stale_version": conflict.expected_version,
                    "current_version": conflict.current_version,
                },
            )

            if attempt >= limit:
                logger.warning(
                    "Conflict retries exhausted",
                    extra={"key": key, "partition": partition, "attempts": attempt},
                )
                raise ConcurrencyExhaustedError(key, partition, attempt, current, conflicts)

            delay = policy.delay_seconds(attempt)
            if dl is not None:
                await dl.sleep(delay, "backoff", key=key, partition=partition, attempts=attempt)
            elif delay > 0:
                await asyncio.sleep(delay)

    @staticmethod
    def _check_proposed(proposed: object, key: str, partition: str) -> None:
        if not isinstance(proposed, Entity):
            raise ValidationError(
                f"mutate_fn must return an Entity, got {type(proposed).__name__}",
                code="INVALID_MUTATION",
            )
        if proposed.key != key or proposed.partition != partition:
            raise ValidationError(
                f"mutate_fn moved '{partition}/{key}' to "
                f"'{proposed.partition}/{proposed.key}'",
                code="INVALID_MUTATION",
            )
