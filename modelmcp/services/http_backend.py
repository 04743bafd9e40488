from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from ..mcp.query import QueryPlan
from .backend import Backend

logger = logging.getLogger("modelmcp.http")

DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
RETRY_BACKOFF: Tuple[float, ...] = (0.5, 1, 2)  # seconds
RETRYABLE_STATUS = (408, 429, 500, 502, 503, 504)
RETRYABLE_EXC = (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError)


class HttpClient:
    """
    Thin httpx.AsyncClient wrapper with retries and timeouts.
    Only idempotent calls should be retried; pass ``retries=1`` otherwise.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
        retries: int = 3,
        backoff: Tuple[float, ...] = RETRY_BACKOFF,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not isinstance(timeout, httpx.Timeout):
            timeout = httpx.Timeout(timeout)
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=self.timeout,
            headers=headers or {},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, url: str, *, retries: Optional[int] = None, **kwargs) -> httpx.Response:
        attempts = max(1, retries if retries is not None else self.retries)

        for attempt in range(attempts - 1):
            try:
                resp = await self._client.request(method, url, **kwargs)
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in RETRYABLE_STATUS:
                    raise
            except RETRYABLE_EXC:
                pass

            delay = self.backoff[min(attempt, len(self.backoff) - 1)]
            logger.warning("Retrying %s attempt=%d delay=%ss url=%s", method, attempt + 1, delay, url)
            await asyncio.sleep(delay)

        # last attempt propagates whatever fails
        resp = await self._client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


class HttpBackend(Backend):
    """Forwards query plans and write commands to a remote data service.

    Wire format, all ``POST`` with a JSON body:

    - ``/query``   ``{"plan": {...}}`` → ``{"result": rows | count | aggregates}``
    - ``/read``    ``{"entity", "keys"}`` → ``{"row": {...} | null}``
    - ``/insert``  ``{"entity", "data"}`` → ``{"row": {...}}``
    - ``/update``  ``{"entity", "keys", "data"}`` → ``{"row": {...} | null}``
    - ``/delete``  ``{"entity", "keys"}`` → ``{"deleted": n}``
    - ``/call``    ``{"service", "operation", "arguments", "entity", "keys"}`` → ``{"result": ...}``
    """

    def __init__(self, client: HttpClient) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "HttpBackend":
        headers = {"Authorization": f"Bearer {settings.backend_token}"} if settings.backend_token else None
        client = HttpClient(
            settings.backend_url,
            timeout=settings.query_timeout,
            headers=headers,
            transport=transport,
        )
        logger.info(f"Using HTTP backend at {settings.backend_url}")
        return cls(client)

    async def _post(self, path: str, payload: Dict[str, Any], *, idempotent: bool = True) -> Dict[str, Any]:
        resp = await self.client.post(path, json=payload, retries=None if idempotent else 1)
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected response from {path}: expected an object")
        return body

    async def run(self, plan: QueryPlan) -> Any:
        body = await self._post("/query", {"plan": plan.to_dict()})
        return body.get("result")

    async def read(self, entity: str, keys: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        body = await self._post("/read", {"entity": entity, "keys": dict(keys)})
        return body.get("row")

    async def insert(self, entity: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        body = await self._post("/insert", {"entity": entity, "data": dict(data)}, idempotent=False)
        return body.get("row") or {}

    async def update(self, entity: str, keys: Mapping[str, Any], data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        body = await self._post("/update", {"entity": entity, "keys": dict(keys), "data": dict(data)}, idempotent=False)
        return body.get("row")

    async def delete(self, entity: str, keys: Mapping[str, Any]) -> int:
        body = await self._post("/delete", {"entity": entity, "keys": dict(keys)}, idempotent=False)
        return int(body.get("deleted", 0))

    async def call(
        self,
        service: str,
        operation: str,
        arguments: Mapping[str, Any],
        *,
        entity: Optional[str] = None,
        keys: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"service": service, "operation": operation, "arguments": dict(arguments)}
        if entity is not None:
            payload["entity"] = entity
            payload["keys"] = dict(keys or {})
        body = await self._post("/call", payload, idempotent=False)
        return body.get("result")

    async def close(self) -> None:
        await self.client.close()
