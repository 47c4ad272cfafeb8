"""Small coordination primitives for the booking session.

Both assume a single asyncio event loop: nothing here is thread-safe.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Run at most one call at a time; calls arriving meanwhile are dropped.

    Unlike a lock, a second caller does not wait: it returns ``None``
    immediately. Used for releasing a hold, where a duplicate call would only
    repeat the same server request.
    """

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._lock = asyncio.Lock()
        self.dropped = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self._lock.locked():
            self.dropped += 1
            logger.debug("%s already in flight, dropping call", self.name)
            return None
        async with self._lock:
            return await func(*args, **kwargs)


class FetchGeneration:
    """Monotonic fetch tokens; a response is applied only if its token is current."""

    def __init__(self):
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        self._current += 1
        return self._current

    def invalidate(self) -> None:
        """Make every outstanding token stale without starting a fetch."""
        self._current += 1

    def is_current(self, token: int) -> bool:
        return token == self._current
