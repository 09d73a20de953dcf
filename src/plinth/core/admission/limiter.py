"""Async FIFO concurrency limiter for a single provider."""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger(__name__)

# Limiter names appear in logs and config keys
_VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")


class AdmissionLimiter:
    """Bounds concurrent in-flight calls to one provider.

    Up to ``max_in_flight`` callers hold a slot at once. Further callers
    are queued in arrival order and resumed one by one as slots free up.
    A released slot is handed directly to the oldest waiter, so a newcomer
    can never overtake the queue.

    Never raises for capacity: exceeding the bound only delays admission.

    Example:
        limiter = AdmissionLimiter("search", max_in_flight=2)

        async with limiter.slot():
            await call_search_api()
    """

    def __init__(self, name: str, max_in_flight: int) -> None:
        """Initialize limiter.

        Args:
            name: Provider name, used in logs
            max_in_flight: Maximum concurrent slots (must be > 0)

        Raises:
            ValueError: If name is invalid or max_in_flight is not positive.
        """
        if not _VALID_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid admission limiter name: {name!r}")
        if max_in_flight <= 0:
            raise ValueError(f"max_in_flight must be positive, got {max_in_flight}")

        self.name = name
        self._max_in_flight = max_in_flight
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        return self._in_flight

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait for a slot (FIFO)."""
        if self._in_flight < self._max_in_flight and not self._waiters:
            self._in_flight += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(
            "Admission queued",
            limiter=self.name,
            in_flight=self._in_flight,
            queued=len(self._waiters),
        )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed to us just before cancellation - pass it on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """Return a slot, handing it to the oldest live waiter if any.

        Raises:
            RuntimeError: If no slot is held.
        """
        if self._in_flight <= 0:
            raise RuntimeError(f"release() without a held slot on limiter {self.name!r}")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Ownership transfers; in-flight count is unchanged
                waiter.set_result(None)
                return
        self._in_flight -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
