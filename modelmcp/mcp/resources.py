from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from ..annotations.structures import ResourceAnnotation
from ..utils.errors import ValidationError
from .descriptors import ResourceDescriptor, ResourceTemplateDescriptor
from .executor import QueryExecutor
from .filters import parse_filter, parse_orderby, parse_select
from .query import Predicate, QuerySpec, QueryTranslator, ResultShape
from .uri_template import UriTemplate

logger = logging.getLogger("modelmcp.resources")


def _parse_int(name: str, raw: str, minimum: int, maximum: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {raw!r}", field=name, expected="integer") from None
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"{minimum}..{maximum}" if maximum is not None else f">= {minimum}"
        raise ValidationError(f"{name} must be in range {bounds}, got {value}", field=name, expected=f"integer {bounds}")
    return value


class EntityResource:
    """Reads one annotated entity through its resource URI."""

    def __init__(
        self,
        resource: ResourceAnnotation,
        executor: QueryExecutor,
        *,
        scheme: str,
        max_top: int,
        default_top: int,
    ) -> None:
        self.resource = resource
        self.executor = executor
        self.translator = QueryTranslator(resource, max_top=max_top, default_top=default_top)
        self.base_uri = f"{scheme}://{resource.service_name}/{resource.name}"

    def describe(self) -> str:
        lines = [self.resource.description]
        if self.resource.options:
            lines.append("")
            lines.append(f"Query parameters: {', '.join(self.resource.options)}")
            if "filter" in self.resource.options:
                lines.append(
                    "filter uses eq, ne, gt, ge, lt, le, contains(), startswith(), endswith() "
                    "combined with and, or, not"
                )
            if "top" in self.resource.options:
                lines.append(f"top: 1..{self.translator.max_top} (default {self.translator.default_top})")
        properties = ", ".join(f"{f.name} ({f.type})" for f in self.resource.scalar_fields)
        lines.append(f"Properties: {properties}")
        return "\n".join(lines)

    def spec_from(self, params: Dict[str, str]) -> QuerySpec:
        conditions = ()
        if params.get("filter"):
            conditions = (parse_filter(self.translator, params["filter"]),)
        columns = parse_select(self.translator, params["select"]) if params.get("select") else ()
        sort_keys = parse_orderby(self.translator, params["orderby"]) if params.get("orderby") else ()
        top = self.translator.default_top
        if params.get("top"):
            top = _parse_int("top", params["top"], 1, self.translator.max_top)
        skip = _parse_int("skip", params["skip"], 0) if params.get("skip") else 0

        return QuerySpec(
            entity=self.resource.element.qualified_name,
            predicate=Predicate(conditions),
            columns=columns or tuple(self.translator.field_names),
            sort_keys=sort_keys,
            page_top=top,
            page_skip=skip,
            result_shape=ResultShape.ROWS,
        )

    async def read(self, uri: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        spec = self.spec_from(params)
        rows = await self.executor.execute(spec, omitted=self.resource.omitted_fields)
        logger.debug(f"Resource {uri} returned {len(rows)} rows")
        return [
            {
                "uri": uri,
                "mimeType": "application/json",
                "text": json.dumps(rows, ensure_ascii=False, default=str),
            }
        ]

    def build(self) -> Union[ResourceDescriptor, ResourceTemplateDescriptor]:
        common = dict(
            name=self.resource.name,
            description=self.describe(),
            handler=self.read,
            source=self.resource.element.qualified_name,
            title=self.resource.entity_name,
            restrictions=self.resource.restrictions,
        )
        if not self.resource.options:
            return ResourceDescriptor(uri=self.base_uri, **common)
        return ResourceTemplateDescriptor(
            template=UriTemplate.build(self.base_uri, self.resource.options),
            **common,
        )


def build_resource(
    resource: ResourceAnnotation,
    executor: QueryExecutor,
    *,
    scheme: str,
    max_top: int,
    default_top: int,
) -> Union[ResourceDescriptor, ResourceTemplateDescriptor]:
    return EntityResource(resource, executor, scheme=scheme, max_top=max_top, default_top=default_top).build()
