from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from ..annotations.structures import ToolAnnotation
from ..annotations.walker import ElementKind
from ..utils.errors import ConfigurationError, ValidationError
from .descriptors import ToolDescriptor, ToolResult, json_schema_for
from .executor import QueryExecutor
from .query import coerce_key, coerce_value

logger = logging.getLogger("modelmcp.tools")


class OperationTool:
    """A function or action exposed as a tool.

    Bound operations take the key fields of their entity in addition to
    their declared parameters.
    """

    def __init__(self, annotation: ToolAnnotation, executor: QueryExecutor) -> None:
        self.annotation = annotation
        self.executor = executor
        element = annotation.element
        self.element = element
        self.params = {f.name: f for f in element.fields}
        self.keys = element.keys if annotation.is_bound else ()
        self.entity = element.qualified_name.rsplit(".", 1)[0] if annotation.is_bound else None

        clashes = [key.name for key in self.keys if key.name in self.params]
        if clashes:
            raise ConfigurationError(
                f"Parameters of '{element.qualified_name}' clash with entity keys: {', '.join(clashes)}"
            )

    def input_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for key in self.keys:
            schema = json_schema_for(key.type)
            schema["description"] = f"Key {key.name} of {self.element.bound_to}"
            properties[key.name] = schema
        for name, param in self.params.items():
            schema = json_schema_for(param.type, param.is_array)
            if param.hint:
                schema["description"] = param.hint
            properties[name] = schema
        return {
            "type": "object",
            "properties": properties,
            "required": list(properties),
            "additionalProperties": False,
        }

    def _arguments(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        key_names = {key.name for key in self.keys}
        unknown = [name for name in arguments if name not in self.params and name not in key_names]
        if unknown:
            raise ValidationError(f"Unknown argument(s): {', '.join(unknown)}", field=unknown[0])

        values: Dict[str, Any] = {}
        for name, param in self.params.items():
            if name not in arguments:
                raise ValidationError(f"Missing argument '{name}'", field=name, expected=param.type)
            value = arguments[name]
            if param.is_array:
                if not isinstance(value, list):
                    raise ValidationError(f"Argument '{name}' expects a list", field=name, expected=f"{param.type}[]")
                values[name] = [coerce_value(param.type, item, name) for item in value]
            else:
                values[name] = coerce_value(param.type, value, name)
        return values

    def _keys(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        keys: Dict[str, Any] = {}
        for key in self.keys:
            if arguments.get(key.name) is None:
                raise ValidationError(f"Missing key '{key.name}'", field=key.name, expected=key.type)
            keys[key.name] = coerce_key(key.type, arguments[key.name], key.name)
        return keys

    async def handle(self, arguments: Dict[str, Any]) -> ToolResult:
        keys = self._keys(arguments)
        values = self._arguments(arguments)
        service = self.element.service_name
        result = await self.executor.submit(
            f"Operation {self.element.local_name}",
            lambda: self.executor.backend.call(
                service,
                self.element.local_name,
                values,
                entity=self.entity,
                keys=keys if self.entity else None,
            ),
        )
        return ToolResult.from_value(result)

    def build(self) -> ToolDescriptor:
        # functions read, actions change state
        operation = "READ" if self.element.kind is ElementKind.FUNCTION else "UPDATE"
        return ToolDescriptor(
            name=self.annotation.name,
            description=self.annotation.description,
            input_schema=self.input_schema(),
            handler=self.handle,
            source=self.element.qualified_name,
            operation=operation,
            restrictions=self.annotation.restrictions,
        )


def build_operation_tool(annotation: ToolAnnotation, executor: QueryExecutor) -> ToolDescriptor:
    return OperationTool(annotation, executor).build()
