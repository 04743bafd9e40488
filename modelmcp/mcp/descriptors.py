"""Capability descriptors exposed through the MCP catalog."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..annotations.constants import (
    DATE_TYPES,
    DATETIME_TYPES,
    INTEGER_TYPES,
    NUMBER_TYPES,
)
from ..annotations.structures import PromptInput, Restriction, permits
from ..utils.auth import Principal
from ..utils.errors import ValidationError
from .uri_template import UriTemplate


def json_schema_for(type_name: str, is_array: bool = False) -> Dict[str, Any]:
    """JSON schema fragment for a model type."""
    if type_name == "Int64":
        schema: Dict[str, Any] = {"type": ["integer", "string"]}
    elif type_name in INTEGER_TYPES:
        schema = {"type": "integer"}
        if type_name == "UInt8":
            schema.update(minimum=0, maximum=255)
    elif type_name == "Decimal":
        schema = {"type": ["number", "string"]}
    elif type_name in NUMBER_TYPES:
        schema = {"type": "number"}
    elif type_name == "Boolean":
        schema = {"type": "boolean"}
    elif type_name == "UUID":
        schema = {"type": "string", "format": "uuid"}
    elif type_name in DATE_TYPES:
        schema = {"type": "string", "format": "date"}
    elif type_name in DATETIME_TYPES:
        schema = {"type": "string", "format": "date-time"}
    else:
        schema = {"type": "string"}
    if is_array:
        return {"type": "array", "items": schema}
    return schema


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ToolResult:
    content: Tuple[Dict[str, Any], ...]
    is_error: bool = False

    @classmethod
    def json(cls, value: Any) -> "ToolResult":
        return cls(({"type": "text", "text": _dumps(value)},))

    @classmethod
    def from_value(cls, value: Any) -> "ToolResult":
        """One text item per list entry, objects JSON encoded."""
        values = value if isinstance(value, list) else [value]
        items = [
            {"type": "text", "text": item if isinstance(item, str) else _dumps(item)}
            for item in values
        ]
        return cls(tuple(items))

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(({"type": "text", "text": message},), is_error=True)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": list(self.content), "isError": self.is_error}


ToolHandler = Callable[..., Awaitable[ToolResult]]
ResourceHandler = Callable[[str, Dict[str, str]], Awaitable[List[Dict[str, Any]]]]


def allowed(restrictions: Tuple[Restriction, ...], operation: Optional[str], principal: Principal) -> bool:
    if principal.privileged or operation is None:
        return True
    return permits(restrictions, operation, principal.effective_roles)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Mapping[str, Any]
    handler: ToolHandler
    source: str
    title: Optional[str] = None
    operation: Optional[str] = None
    restrictions: Tuple[Restriction, ...] = ()
    hints: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    # handler is called as handler(arguments, principal=...)
    with_principal: bool = False

    def permits(self, principal: Principal) -> bool:
        return allowed(self.restrictions, self.operation, principal)

    async def call(self, arguments: Dict[str, Any], principal: Principal) -> ToolResult:
        if self.with_principal:
            return await self.handler(arguments, principal=principal)
        return await self.handler(arguments)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if self.title:
            payload["title"] = self.title
        if self.hints:
            payload["annotations"] = dict(self.hints)
        return payload


@dataclass(frozen=True)
class ResourceDescriptor:
    name: str
    uri: str
    description: str
    handler: ResourceHandler
    source: str
    title: Optional[str] = None
    mime_type: str = "application/json"
    restrictions: Tuple[Restriction, ...] = ()

    def permits(self, principal: Principal) -> bool:
        return allowed(self.restrictions, "READ", principal)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"uri": self.uri, "name": self.name, "description": self.description, "mimeType": self.mime_type}
        if self.title:
            payload["title"] = self.title
        return payload


@dataclass(frozen=True)
class ResourceTemplateDescriptor:
    name: str
    template: UriTemplate
    description: str
    handler: ResourceHandler
    source: str
    title: Optional[str] = None
    mime_type: str = "application/json"
    restrictions: Tuple[Restriction, ...] = ()

    @property
    def uri(self) -> str:
        return self.template.base

    @property
    def allowed_parameters(self) -> Tuple[str, ...]:
        return self.template.params

    def permits(self, principal: Principal) -> bool:
        return allowed(self.restrictions, "READ", principal)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "uriTemplate": str(self.template),
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }
        if self.title:
            payload["title"] = self.title
        return payload


@dataclass(frozen=True)
class PromptDescriptor:
    name: str
    title: str
    description: str
    template: str
    source: str
    role: str = "user"
    inputs: Tuple[PromptInput, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "arguments": [
                {"name": item.key, "description": f"{item.key} ({item.type})", "required": True}
                for item in self.inputs
            ],
        }

    def render(self, arguments: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        arguments = dict(arguments or {})
        declared = {item.key for item in self.inputs}
        unknown = sorted(set(arguments) - declared)
        if unknown:
            raise ValidationError(
                f"Unknown argument(s) for prompt '{self.name}': {', '.join(unknown)}",
                field=unknown[0],
            )
        text = self.template
        for item in self.inputs:
            if arguments.get(item.key) is None:
                raise ValidationError(
                    f"Missing argument '{item.key}' for prompt '{self.name}'",
                    field=item.key,
                    expected=item.type,
                )
            text = text.replace("{{" + item.key + "}}", str(arguments[item.key]))
        return {
            "description": self.description,
            "messages": [{"role": self.role, "content": {"type": "text", "text": text}}],
        }
