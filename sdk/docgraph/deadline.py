"""
Deadlines for docgraph operations.

Every retry loop, batched fetch and fan-out query accepts a Deadline.
Deadlines are absolute points on the monotonic clock so they can be handed
down through nested calls without drifting.

Invariants:
    - An expired deadline raises DeadlineExceededError, never TimeoutError
    - Reads may be cancelled at the deadline; writes are never cancelled
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from .errors import DeadlineExceededError

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """Absolute expiry on the monotonic clock.

    Attributes:
        expires_at: time.monotonic() value at which the deadline expires

    Example:
        >>> deadline = Deadline.after(0.5)
        >>> entity = await controller.update_with_retry(..., deadline=deadline)
    """

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        """Deadline `seconds` from now."""
        return cls(expires_at=time.monotonic() + seconds)

    @classmethod
    def after_ms(cls, ms: int) -> Deadline:
        return cls.after(ms / 1000.0)

    def remaining(self) -> float:
        """Seconds left (never negative)."""
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(
        self,
        operation: str,
        key: str | None = None,
        partition: str | None = None,
        attempts: int = 0,
    ) -> None:
        """Raise DeadlineExceededError if already expired."""
        if self.expired:
            raise DeadlineExceededError(operation, key=key, partition=partition, attempts=attempts)

    async def bound(
        self,
        aw: Awaitable[T],
        operation: str,
        key: str | None = None,
        partition: str | None = None,
        attempts: int = 0,
    ) -> T:
        """Await `aw`, cancelling it when the deadline expires.

        Only use for operations that are safe to abandon (reads, sleeps).
        """
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise DeadlineExceededError(operation, key=key, partition=partition, attempts=attempts)
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except asyncio.TimeoutError:
            raise DeadlineExceededError(
                operation, key=key, partition=partition, attempts=attempts
            ) from None

    async def sleep(
        self,
        seconds: float,
        operation: str,
        key: str | None = None,
        partition: str | None = None,
        attempts: int = 0,
    ) -> None:
        """Sleep for a backoff delay, failing fast if it would outlast the deadline."""
        if seconds >= self.remaining():
            raise DeadlineExceededError(operation, key=key, partition=partition, attempts=attempts)
        await asyncio.sleep(seconds)


def resolve_deadline(deadline: Deadline | float | None, default_ms: int = 0) -> Deadline | None:
    """Normalize a deadline argument.

    Args:
        deadline: A Deadline, a timeout in seconds, or None
        default_ms: Default timeout when deadline is None (0 = no deadline)

    Returns:
        Deadline or None when the operation is unbounded
    """
    if isinstance(deadline, Deadline):
        return deadline
    if deadline is not None:
        return Deadline.after(float(deadline))
    if default_ms > 0:
        return Deadline.after_ms(default_ms)
    return None


async def maybe_bound(
    deadline: Deadline | None,
    aw: Awaitable[T],
    operation: str,
    key: str | None = None,
    partition: str | None = None,
    attempts: int = 0,
) -> T:
    """Await `aw` under `deadline` when one is set."""
    if deadline is None:
        return await aw
    return await deadline.bound(aw, operation, key=key, partition=partition, attempts=attempts)


async def cancel_all(tasks: Iterable[asyncio.Future]) -> None:
    """Cancel pending tasks and wait until every one has finished."""
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
