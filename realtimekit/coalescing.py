"""Request coalescing: run one operation per key and share its outcome."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


@dataclass
class CoalescingStats:
    """Counters describing what a coalescing service has done."""

    initiated_operations: int = 0
    """Operations started (first request for a given key)."""
    coalesced_requests: int = 0
    """Requests that joined an operation already in flight."""
    failed_operations: int = 0
    """Initiated operations that failed, timeouts excluded."""
    timed_out_operations: int = 0
    """Initiated operations that exceeded the service timeout."""


class OperationTimeoutError(TimeoutError):
    """Raised to every waiter when a coalesced operation exceeds the timeout."""

    def __init__(self, key: Hashable) -> None:
        super().__init__(f"Operation timed out for key: {key!r}")
        self.key = key


def _to_seconds(timeout: Union[float, int, timedelta, None]) -> Optional[float]:
    if timeout is None:
        return None
    seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
    if seconds < 0:
        raise ValueError("timeout must not be negative")
    return seconds


def _consume_outcome(task: "asyncio.Task[object]") -> None:
    # Keeps asyncio from warning when every waiter was cancelled.
    if not task.cancelled():
        task.exception()


class CoalescingService(Generic[K, T]):
    """Coalesce concurrent identical asynchronous operations by key.

    While an operation for a key is in flight, further requests for that key
    wait for its outcome instead of starting a new one.
    """

    def __init__(self, timeout: Union[float, int, timedelta, None] = None) -> None:
        self._timeout = _to_seconds(timeout)
        self._inflight: Dict[K, "asyncio.Task[T]"] = {}
        self._stats = CoalescingStats()

    @property
    def timeout(self) -> Optional[float]:
        """The per-operation timeout in seconds, or None."""
        return self._timeout

    async def execute(self, key: K, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` for ``key``, or join the run already in flight.

        ``operation`` is called only when no run for ``key`` is in progress.
        Every waiter receives the same result, or the same exception is raised
        to each of them. A timeout raises :class:`OperationTimeoutError`.
        """
        task = self._inflight.get(key)
        if task is not None:
            logger.debug("Request for %r coalesced, joining existing operation.", key)
            self._stats.coalesced_requests += 1
        else:
            logger.info("Initiating new operation for %r.", key)
            self._stats.initiated_operations += 1
            task = asyncio.ensure_future(self._run(key, operation))
            task.add_done_callback(_consume_outcome)
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: K, operation: Callable[[], Awaitable[T]]) -> T:
        logger.info("Executing underlying operation for %r.", key)
        try:
            if self._timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), self._timeout)
            except asyncio.TimeoutError:
                logger.warning("Operation for %r timed out after %ss", key, self._timeout)
                self._stats.timed_out_operations += 1
                raise OperationTimeoutError(key) from None
        except OperationTimeoutError:
            raise
        except Exception:
            logger.exception("Underlying operation for %r failed", key)
            self._stats.failed_operations += 1
            raise
        finally:
            logger.debug("Operation for %r finished, removing from active map.", key)
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    def get_stats(self) -> CoalescingStats:
        """Return a snapshot of the current statistics."""
        return dataclasses.replace(self._stats)

    def get_pending_tasks_count(self) -> int:
        """Return how many distinct keys have an operation in flight."""
        return len(self._inflight)

    def reset_stats(self) -> None:
        """Reset all statistics to zero."""
        logger.info("Resetting statistics.")
        self._stats = CoalescingStats()