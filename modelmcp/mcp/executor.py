from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from ..services.backend import Backend
from ..utils.errors import BackendError, McpError, safe_backend_error
from ..utils.throttle import QuerySlots
from .query import QuerySpec, ResultShape, build_plan, strip_omitted

logger = logging.getLogger("modelmcp.executor")

T = TypeVar("T")


class QueryExecutor:
    """Submits work to the backend under a concurrency slot and a timeout.

    Backend exceptions never reach the client as-is: they are logged and
    replaced by a sanitized :class:`BackendError`.
    """

    def __init__(self, backend: Backend, *, timeout: float, slots: QuerySlots) -> None:
        self.backend = backend
        self.timeout = timeout
        self.slots = slots

    @classmethod
    def from_settings(cls, backend: Backend, settings) -> "QueryExecutor":
        return cls(backend, timeout=settings.query_timeout, slots=QuerySlots.from_settings(settings))

    async def submit(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        async with self.slots.slot():
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{description} timed out after {self.timeout}s")
                raise BackendError(f"{description} timed out after {self.timeout:g}s") from None
            except McpError:
                raise
            except Exception as exc:
                raise safe_backend_error(f"{description} failed", f"{description}: {exc!r}") from exc

    async def execute(
        self,
        spec: QuerySpec,
        shape: Optional[ResultShape] = None,
        *,
        omitted: Sequence[str] = (),
    ) -> Any:
        """Run ``spec`` for one result shape.

        Returns rows, ``{"count": n}`` or the aggregate mapping.
        """
        plan = build_plan(spec, shape)
        logger.debug(f"Executing {plan.shape.value} plan on {plan.entity}")
        result = await self.submit(f"Query on {plan.entity}", lambda: self.backend.run(plan))

        if plan.shape is ResultShape.COUNT:
            if isinstance(result, dict):
                result = result.get("count", 0)
            return {"count": int(result)}
        return strip_omitted(result, omitted)
