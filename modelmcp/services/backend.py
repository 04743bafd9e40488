from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from ..mcp.query import QueryPlan


class Backend(ABC):
    """Query-submission interface of the data engine behind the catalog.

    Entities are addressed by qualified name, keys by the flattened key
    names produced by the schema walker. Implementations raise whatever
    they like; the query executor turns failures into sanitized errors.
    """

    @abstractmethod
    async def run(self, plan: QueryPlan) -> Any:
        """Execute a query plan.

        Returns a list of rows for ``rows``, an int for ``count`` and a
        mapping of ``<fn>_<field>`` values for ``aggregate``.
        """

    @abstractmethod
    async def read(self, entity: str, keys: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, entity: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, entity: str, keys: Mapping[str, Any], data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, entity: str, keys: Mapping[str, Any]) -> int:
        ...

    @abstractmethod
    async def call(
        self,
        service: str,
        operation: str,
        arguments: Mapping[str, Any],
        *,
        entity: Optional[str] = None,
        keys: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Invoke an unbound (``entity`` is None) or bound operation."""

    async def close(self) -> None:
        return None
