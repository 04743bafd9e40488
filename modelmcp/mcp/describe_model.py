"""The ``describe_model`` tool: lets a client discover entities and their fields."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..annotations.constants import DATE_TYPES, DATETIME_TYPES, INTEGER_TYPES, NUMBER_TYPES
from ..annotations.structures import ResourceAnnotation, ToolAnnotation
from ..utils.auth import Principal
from ..utils.errors import ValidationError
from .descriptors import ToolDescriptor, ToolResult, allowed

DESCRIBE_TOOL_NAME = "describe_model"
FORMATS = ("concise", "detailed")


def example_value(type_name: str) -> Any:
    if type_name in INTEGER_TYPES or type_name == "Int64":
        return 1
    if type_name in NUMBER_TYPES:
        return 9.99
    if type_name == "Boolean":
        return True
    if type_name == "UUID":
        return "3fa85f64-5717-4562-b3fc-2c963f66afa6"
    if type_name in DATE_TYPES:
        return "2024-01-31"
    if type_name in DATETIME_TYPES:
        return "2024-01-31T12:00:00Z"
    return "text"


class ModelDescriber:
    """Describes only what the calling principal is allowed to read.

    Entities whose READ restriction rejects the principal, and tools the
    catalog would hide from it, are left out as if they did not exist.
    """

    def __init__(
        self,
        resources: Sequence[ResourceAnnotation],
        operations: Sequence[ToolAnnotation],
        tools_by_entity: Mapping[str, Sequence[str]],
        tools: Mapping[str, ToolDescriptor],
    ) -> None:
        self.resources = list(resources)
        self.operations = list(operations)
        self.tools_by_entity = {name: list(tools) for name, tools in tools_by_entity.items()}
        self.tools = tools

    def _tool_visible(self, name: str, principal: Principal) -> bool:
        tool = self.tools.get(name)
        return tool is not None and tool.permits(principal)

    def _visible_resources(self, principal: Principal) -> List[ResourceAnnotation]:
        return [r for r in self.resources if allowed(r.restrictions, "READ", principal)]

    def _visible_operations(self, principal: Principal) -> List[ToolAnnotation]:
        return [o for o in self.operations if self._tool_visible(o.name, principal)]

    def _services(self, principal: Principal) -> List[str]:
        services: List[str] = []
        elements = [r.element for r in self._visible_resources(principal)]
        elements += [o.element for o in self._visible_operations(principal)]
        for item in elements:
            if item.service_name not in services:
                services.append(item.service_name)
        return services

    def _find(self, entity: str, service: Optional[str], principal: Principal) -> ResourceAnnotation:
        resources = self._visible_resources(principal)
        candidates = [
            r for r in resources
            if r.element.qualified_name == entity
            or (r.entity_name == entity and (service is None or r.service_name == service))
        ]
        if not candidates:
            known = ", ".join(r.element.qualified_name for r in resources)
            raise ValidationError(f"Unknown entity '{entity}'. Known: {known}", field="entity")
        if len(candidates) > 1:
            names = ", ".join(r.element.qualified_name for r in candidates)
            raise ValidationError(f"Entity '{entity}' is ambiguous, pass service: {names}", field="entity")
        return candidates[0]

    def overview(self, service: Optional[str], principal: Principal) -> Dict[str, Any]:
        services = self._services(principal)
        if service is not None:
            if service not in services:
                raise ValidationError(f"Unknown service '{service}'. Known: {', '.join(services)}", field="service")
            services = [service]
        resources = self._visible_resources(principal)
        operations = self._visible_operations(principal)
        return {
            "services": [
                {
                    "name": name,
                    "entities": [r.entity_name for r in resources if r.service_name == name],
                    "operations": [o.name for o in operations if o.element.service_name == name],
                }
                for name in services
            ]
        }

    def entity(self, resource: ResourceAnnotation, detailed: bool, principal: Principal) -> Dict[str, Any]:
        fields = []
        for item in resource.scalar_fields:
            entry: Dict[str, Any] = {"name": item.name, "type": item.type}
            if item.is_key:
                entry["key"] = True
            if item.is_computed:
                entry["computed"] = True
            if item.foreign_key_for:
                entry["foreignKeyFor"] = item.foreign_key_for
            if detailed and item.hint:
                entry["hint"] = item.hint
            fields.append(entry)

        keys = {key.name: example_value(key.type) for key in resource.keys}
        writable = {f.name: example_value(f.type) for f in resource.writable_fields if not f.is_key}
        text_fields = [f.name for f in resource.scalar_fields if f.type == "String"][:3]
        payload: Dict[str, Any] = {
            "entity": resource.element.qualified_name,
            "service": resource.service_name,
            "keys": [{"name": key.name, "type": key.type} for key in resource.keys],
            "fields": fields,
            "tools": [
                name
                for name in self.tools_by_entity.get(resource.element.qualified_name, [])
                if self._tool_visible(name, principal)
            ],
            "examples": {
                "query": {"top": 5, "select": [f["name"] for f in fields[:3]]},
                "get": keys,
                "create": {**keys, **writable},
            },
        }
        if text_fields:
            payload["examples"]["search"] = {"q": "term", "top": 5}
        if detailed:
            payload["description"] = resource.description
            payload["associations"] = [
                {"name": f.name, "target": f.target}
                for f in resource.element.fields
                if f.is_association and not f.is_omitted
            ]
        return payload

    async def handle(self, arguments: Dict[str, Any], *, principal: Principal) -> ToolResult:
        unknown = [name for name in arguments if name not in ("service", "entity", "format")]
        if unknown:
            raise ValidationError(f"Unknown argument(s): {', '.join(unknown)}", field=unknown[0])
        output_format = arguments.get("format", "concise")
        if output_format not in FORMATS:
            raise ValidationError(f"format must be one of {', '.join(FORMATS)}", field="format", expected="concise|detailed")
        service = arguments.get("service")
        entity = arguments.get("entity")
        for name, value in (("service", service), ("entity", entity)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string", field=name, expected="string")

        if entity:
            resource = self._find(entity, service, principal)
            return ToolResult.json(self.entity(resource, output_format == "detailed", principal))
        return ToolResult.json(self.overview(service, principal))

    def build(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=DESCRIBE_TOOL_NAME,
            description=(
                "Describe the exposed data model: list services and entities, or show one entity's "
                "fields, keys, generated tools and example arguments."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "service": {"type": "string", "description": "Restrict to one service"},
                    "entity": {"type": "string", "description": "Entity name, local or qualified"},
                    "format": {"type": "string", "enum": list(FORMATS), "default": "concise"},
                },
                "additionalProperties": False,
            },
            handler=self.handle,
            source="<model>",
            title="Describe model",
            hints={"readOnlyHint": True},
            with_principal=True,
        )
