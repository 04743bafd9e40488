from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from .errors import BackendError


class QuerySlots:
    """Caps the number of backend calls in flight across all sessions."""

    def __init__(self, limit: int, queue_timeout: float) -> None:
        self.limit = max(1, limit)
        self.queue_timeout = queue_timeout
        self._semaphore = asyncio.Semaphore(self.limit)

    @classmethod
    def from_settings(cls, settings) -> "QuerySlots":
        return cls(settings.max_concurrent_queries, settings.query_queue_timeout)

    @asynccontextmanager
    async def slot(self):
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.queue_timeout)
        except asyncio.TimeoutError as exc:
            raise BackendError("Backend is busy, please try again in a moment") from exc
        try:
            yield
        finally:
            self._semaphore.release()
