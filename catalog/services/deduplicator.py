"""
RequestDeduplicator - Prevents duplicate concurrent requests.

When multiple callers request the same resource simultaneously,
only one actual request is made and the result is shared. The
registration outlives completion by a grace window so trailing
duplicates reuse the just-finished result.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class InFlightRequest:
    """One registration in the in-flight map."""

    key: str
    task: asyncio.Task[Any]
    started_at: float
    expiry: asyncio.TimerHandle | None = field(default=None, repr=False)


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    When multiple coroutines request the same key within ``window`` seconds
    of each other, only one actual request is made. All callers await the
    same result (or the same exception).

    Usage:
        dedup = RequestDeduplicator(window=5.0)

        async def fetch_data(url: str):
            return await dedup.dedupe(
                key=url,
                request_fn=lambda: http_client.get(url)
            )
    """

    def __init__(self, window: float = 5.0, debug: bool = False):
        self.window = window
        self._in_flight: dict[str, InFlightRequest] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        A registration is shared if it is still pending and started within
        the window, or if it finished and its grace window has not expired.

        Args:
            key: Unique identifier for this request
            request_fn: Async function to execute if no duplicate exists

        Returns:
            Result from request_fn (either fresh or from in-flight request)
        """
        loop = asyncio.get_running_loop()

        async with self._lock:
            existing = self._in_flight.get(key)
            if existing is not None and self._is_shareable(existing, loop.time()):
                self._stats.deduplicated += 1
                self._log(f"DEDUPE: Sharing in-flight request: {key[:50]}...")
                task = existing.task
            else:
                if existing is not None and existing.expiry is not None:
                    existing.expiry.cancel()
                self._stats.total += 1
                self._log(f"NEW: Starting request: {key[:50]}...")
                task = asyncio.create_task(request_fn())
                entry = InFlightRequest(key=key, task=task, started_at=loop.time())
                self._in_flight[key] = entry
                task.add_done_callback(lambda _t, e=entry: self._schedule_expiry(e))

        # Shielded so one caller's cancellation does not cancel the shared request
        return await asyncio.shield(task)

    def _is_shareable(self, entry: InFlightRequest, now: float) -> bool:
        if entry.task.done():
            return True
        return now - entry.started_at < self.window

    def _schedule_expiry(self, entry: InFlightRequest) -> None:
        self._log(f"DONE: Request completed: {entry.key[:50]}...")
        if not entry.task.cancelled():
            # Mark the outcome as retrieved; waiters re-raise it themselves
            entry.task.exception()
        if self.window <= 0:
            self._expire(entry)
            return
        loop = entry.task.get_loop()
        entry.expiry = loop.call_later(self.window, self._expire, entry)

    def _expire(self, entry: InFlightRequest) -> None:
        # Only drop the registration if it has not been replaced meanwhile
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
            self._log(f"EXPIRE: {entry.key[:50]}...")

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests and drop every registration."""
        async with self._lock:
            count = 0
            for entry in self._in_flight.values():
                if entry.expiry is not None:
                    entry.expiry.cancel()
                if not entry.task.done():
                    entry.task.cancel()
                    count += 1
            self._in_flight.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} requests cancelled")
            return count

    def clear(self) -> None:
        """Drop registrations without cancelling running requests."""
        for entry in self._in_flight.values():
            if entry.expiry is not None:
                entry.expiry.cancel()
        self._in_flight.clear()

    def get_in_flight_count(self) -> int:
        """Get number of registrations (pending or within their grace window)."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all registrations."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = sum(
            1 for e in self._in_flight.values() if not e.task.done()
        )
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Total unique requests made
        self.deduplicated: int = 0  # Requests that were deduplicated
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
