from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..mcp.query import Aggregation, QueryPlan, ResultShape, SortKey
from .backend import Backend

logger = logging.getLogger("modelmcp.memory_backend")

OperationHandler = Callable[..., Awaitable[Any]]


def _same(left: Any, right: Any) -> bool:
    # Int64/Decimal keys arrive as strings
    return left == right or (left is not None and right is not None and str(left) == str(right))


def _matches_keys(row: Mapping[str, Any], keys: Mapping[str, Any]) -> bool:
    return all(_same(row.get(name), value) for name, value in keys.items())


def _sort(rows: List[Dict[str, Any]], order_by: Sequence[SortKey]) -> List[Dict[str, Any]]:
    # stable sort, least significant key first
    for key in reversed(order_by):
        try:
            rows.sort(key=lambda row: (row.get(key.field) is None, row.get(key.field)), reverse=key.descending)
        except TypeError:
            rows.sort(key=lambda row: str(row.get(key.field)), reverse=key.descending)
    return rows


def _aggregate(rows: Sequence[Mapping[str, Any]], aggregations: Sequence[Aggregation]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for aggregation in aggregations:
        values = [row.get(aggregation.field) for row in rows if row.get(aggregation.field) is not None]
        if aggregation.function == "count":
            result[aggregation.alias] = len(values)
        elif not values:
            result[aggregation.alias] = None
        elif aggregation.function == "sum":
            result[aggregation.alias] = sum(values)
        elif aggregation.function == "avg":
            result[aggregation.alias] = sum(values) / len(values)
        elif aggregation.function == "min":
            result[aggregation.alias] = min(values)
        elif aggregation.function == "max":
            result[aggregation.alias] = max(values)
    return result


class InMemoryBackend(Backend):
    """Backend that evaluates query plans against rows held in memory.

    Used by tests and by the bundled app when no backend URL is configured.
    """

    def __init__(
        self,
        data: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None,
        *,
        key_fields: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {
            entity: [dict(row) for row in rows] for entity, rows in (data or {}).items()
        }
        self._key_fields: Dict[str, Tuple[str, ...]] = {
            entity: tuple(names) for entity, names in (key_fields or {}).items()
        }
        self._operations: Dict[Tuple[str, str], OperationHandler] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_file(cls, path: str, *, key_fields: Optional[Mapping[str, Sequence[str]]] = None) -> "InMemoryBackend":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        logger.info(f"Loaded in-memory data for {len(data)} entities from {path}")
        return cls(data, key_fields=key_fields)

    def register_operation(self, service: str, name: str, handler: OperationHandler) -> None:
        self._operations[(service, name)] = handler

    def rows(self, entity: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._tables.get(entity, [])]

    async def run(self, plan: QueryPlan) -> Any:
        matched = [row for row in self._tables.get(plan.entity, []) if plan.predicate.matches(row)]

        if plan.shape is ResultShape.COUNT:
            return len(matched)
        if plan.shape is ResultShape.AGGREGATE:
            return _aggregate(matched, plan.aggregations)

        rows = _sort([dict(row) for row in matched], plan.order_by)
        start = plan.offset or 0
        end = start + plan.limit if plan.limit is not None else None
        page = rows[start:end]
        if plan.columns:
            page = [{name: row.get(name) for name in plan.columns} for row in page]
        return page

    async def read(self, entity: str, keys: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        for row in self._tables.get(entity, []):
            if _matches_keys(row, keys):
                return dict(row)
        return None

    async def insert(self, entity: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            table = self._tables.setdefault(entity, [])
            key_names = self._key_fields.get(entity, ())
            if key_names and all(name in data for name in key_names):
                keys = {name: data[name] for name in key_names}
                if any(_matches_keys(row, keys) for row in table):
                    raise ValueError(f"Duplicate key {keys} for {entity}")
            row = dict(data)
            table.append(row)
            return dict(row)

    async def update(self, entity: str, keys: Mapping[str, Any], data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for row in self._tables.get(entity, []):
                if _matches_keys(row, keys):
                    row.update(data)
                    return dict(row)
        return None

    async def delete(self, entity: str, keys: Mapping[str, Any]) -> int:
        async with self._lock:
            table = self._tables.get(entity, [])
            remaining = [row for row in table if not _matches_keys(row, keys)]
            removed = len(table) - len(remaining)
            self._tables[entity] = remaining
            return removed

    async def call(
        self,
        service: str,
        operation: str,
        arguments: Mapping[str, Any],
        *,
        entity: Optional[str] = None,
        keys: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        handler = self._operations.get((service, operation))
        if handler is None:
            raise LookupError(f"No handler registered for {service}.{operation}")
        if entity is not None:
            return await handler(dict(arguments), entity=entity, keys=dict(keys or {}))
        return await handler(dict(arguments))
