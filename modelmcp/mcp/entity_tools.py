"""CRUD tools generated for wrapped entities.

Each enabled wrap mode of an entity becomes one tool named
``<Service>_<Entity>_<mode>`` (or ``<wrap name>_<mode>``).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Tuple

from ..annotations.constants import KEYED_MODES, OPERATION_BY_MODE
from ..annotations.structures import ResourceAnnotation, WrapDefaults, is_wrapped, resolve_wrap_modes
from ..annotations.walker import ElementField
from ..utils.errors import ValidationError
from .descriptors import ToolDescriptor, ToolResult, json_schema_for
from .executor import QueryExecutor
from .query import AGGREGATE_FUNCTIONS, OPERATORS, QueryTranslator, build_plan, coerce_key, coerce_value, strip_omitted

logger = logging.getLogger("modelmcp.entity_tools")

MODE_TITLES = {
    "query": "Query",
    "get": "Get",
    "create": "Create",
    "update": "Update",
    "delete": "Delete",
}

MODE_HINTS = {
    "query": {"readOnlyHint": True},
    "get": {"readOnlyHint": True},
    "create": {"readOnlyHint": False, "destructiveHint": False},
    "update": {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": True},
    "delete": {"readOnlyHint": False, "destructiveHint": True},
}


def tool_name(resource: ResourceAnnotation, mode: str) -> str:
    if resource.wrap.name:
        return f"{resource.wrap.name}_{mode}"
    return f"{resource.element.service_short_name}_{resource.entity_name}_{mode}"


def wrapped_modes(resource: ResourceAnnotation, defaults: WrapDefaults) -> Tuple[str, ...]:
    """Modes that become tools for ``resource``; empty when it is not wrapped."""
    if not is_wrapped(resource.wrap, defaults):
        return ()
    modes = resolve_wrap_modes(resource.wrap, defaults)
    if not resource.keys:
        skipped = [mode for mode in modes if mode in KEYED_MODES]
        if skipped:
            logger.warning(f"{resource.element.qualified_name} has no keys, skipping modes {skipped}")
        modes = tuple(mode for mode in modes if mode not in KEYED_MODES)
    return modes


def _with_hint(resource: ResourceAnnotation, mode: str, text: str) -> str:
    hint = resource.wrap.hint_for(mode)
    return f"{text} Hint: {hint}" if hint else text


def _field_schema(item: ElementField, entity_fields: Mapping[str, ElementField]) -> Dict[str, Any]:
    schema = json_schema_for(item.type, item.is_array)
    if item.hint:
        schema["description"] = item.hint
    elif item.foreign_key_for:
        association = entity_fields.get(item.foreign_key_for)
        target = association.target if association and association.target else item.foreign_key_for
        schema["description"] = f"Foreign key to {target} on {item.foreign_key_for}"
    return schema


class EntityToolFactory:
    """Builds the wrap-mode tools of one entity."""

    def __init__(
        self,
        resource: ResourceAnnotation,
        executor: QueryExecutor,
        *,
        max_top: int,
        default_top: int,
    ) -> None:
        self.resource = resource
        self.executor = executor
        self.translator = QueryTranslator(resource, max_top=max_top, default_top=default_top)
        self.entity = resource.element.qualified_name
        self.omitted = resource.omitted_fields
        self._all_fields = {f.name: f for f in resource.element.fields}
        self._key_names = resource.keys.names

    # --- schemas -----------------------------------------------------------

    def _key_properties(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for key in self.resource.keys:
            schema = json_schema_for(key.type)
            schema["description"] = f"Key {key.name}"
            properties[key.name] = schema
        return properties

    def _writable(self, include_keys: bool) -> List[ElementField]:
        return [f for f in self.resource.writable_fields if include_keys or f.name not in self._key_names]

    def query_schema(self) -> Dict[str, Any]:
        fields = self.translator.field_names
        properties: Dict[str, Any] = {
            "top": {
                "type": "integer",
                "minimum": 1,
                "maximum": self.translator.max_top,
                "default": self.translator.default_top,
                "description": f"Rows to return (default {self.translator.default_top}, max {self.translator.max_top})",
            },
            "skip": {"type": "integer", "minimum": 0, "default": 0, "description": "Rows to skip"},
            "select": {"type": "array", "items": {"type": "string", "enum": fields}},
            "orderby": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "field": {"type": "string", "enum": fields},
                        "dir": {"type": "string", "enum": ["asc", "desc"], "default": "asc"},
                    },
                    "required": ["field"],
                    "additionalProperties": False,
                },
            },
            "where": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "field": {"type": "string", "enum": fields},
                        "op": {"type": "string", "enum": list(OPERATORS), "default": "eq"},
                        "value": {"description": "Comparison value; a list for 'in'"},
                    },
                    "required": ["field", "value"],
                    "additionalProperties": False,
                },
            },
            "return": {"type": "string", "enum": ["rows", "count", "aggregate"], "default": "rows"},
            "aggregate": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "field": {"type": "string", "enum": fields},
                        "fn": {"type": "string", "enum": list(AGGREGATE_FUNCTIONS)},
                    },
                    "required": ["field", "fn"],
                    "additionalProperties": False,
                },
            },
            "explain": {"type": "boolean", "default": False, "description": "Include the query plan"},
        }
        if self.translator.search_fields:
            properties["q"] = {
                "type": "string",
                "description": f"Free-text search across {', '.join(self.translator.search_fields)}",
            }
        return {"type": "object", "properties": properties, "additionalProperties": False}

    def key_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": self._key_properties(),
            "required": list(self._key_names),
            "additionalProperties": False,
        }

    def create_schema(self) -> Dict[str, Any]:
        properties = {f.name: _field_schema(f, self._all_fields) for f in self._writable(include_keys=True)}
        return {"type": "object", "properties": properties, "additionalProperties": False}

    def update_schema(self) -> Dict[str, Any]:
        properties = self._key_properties()
        properties.update({f.name: _field_schema(f, self._all_fields) for f in self._writable(include_keys=False)})
        return {
            "type": "object",
            "properties": properties,
            "required": list(self._key_names),
            "additionalProperties": False,
        }

    # --- argument handling -------------------------------------------------

    def _keys_from(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        keys: Dict[str, Any] = {}
        for key in self.resource.keys:
            if arguments.get(key.name) is None:
                raise ValidationError(
                    f"Missing key '{key.name}' for {self.resource.entity_name}",
                    field=key.name,
                    expected=key.type,
                )
            keys[key.name] = coerce_key(key.type, arguments[key.name], key.name)
        return keys

    def _payload_from(self, arguments: Mapping[str, Any], allowed: List[ElementField]) -> Dict[str, Any]:
        by_name = {f.name: f for f in allowed}
        unknown = [name for name in arguments if name not in by_name and name not in self._key_names]
        if unknown:
            raise ValidationError(
                f"Unknown or read-only field(s) for {self.resource.entity_name}: {', '.join(unknown)}. "
                f"Writable: {', '.join(by_name)}",
                field=unknown[0],
            )
        payload: Dict[str, Any] = {}
        for name, value in arguments.items():
            target = by_name.get(name)
            if target is None:
                continue
            if target.is_array:
                if not isinstance(value, list):
                    raise ValidationError(f"Field '{name}' expects a list", field=name, expected=f"{target.type}[]")
                payload[name] = [coerce_value(target.type, item, name) for item in value]
            else:
                payload[name] = coerce_value(target.type, value, name)
        return payload

    def _reject_extra(self, arguments: Mapping[str, Any]) -> None:
        extra = [name for name in arguments if name not in self._key_names]
        if extra:
            raise ValidationError(
                f"Unexpected argument(s): {', '.join(extra)}. Expected keys: {', '.join(self._key_names)}",
                field=extra[0],
            )

    def _describe_keys(self, keys: Mapping[str, Any]) -> str:
        return ", ".join(f"{name}={value}" for name, value in keys.items())

    # --- handlers ----------------------------------------------------------

    async def handle_query(self, arguments: Dict[str, Any]) -> ToolResult:
        spec = self.translator.translate(arguments)
        result = await self.executor.execute(spec, omitted=self.omitted)
        if spec.explain:
            return ToolResult.json({"plan": build_plan(spec).to_dict(), "result": result})
        return ToolResult.json(result)

    async def handle_get(self, arguments: Dict[str, Any]) -> ToolResult:
        self._reject_extra(arguments)
        keys = self._keys_from(arguments)
        row = await self.executor.submit(
            f"Get {self.resource.entity_name}",
            lambda: self.executor.backend.read(self.entity, keys),
        )
        if row is None:
            return ToolResult.error(f"{self.resource.entity_name} not found for {self._describe_keys(keys)}")
        return ToolResult.json(strip_omitted(row, self.omitted))

    async def handle_create(self, arguments: Dict[str, Any]) -> ToolResult:
        payload = self._payload_from(arguments, self._writable(include_keys=True))
        row = await self.executor.submit(
            f"Create {self.resource.entity_name}",
            lambda: self.executor.backend.insert(self.entity, payload),
        )
        return ToolResult.json(strip_omitted(row, self.omitted))

    async def handle_update(self, arguments: Dict[str, Any]) -> ToolResult:
        keys = self._keys_from(arguments)
        data = {name: value for name, value in arguments.items() if name not in self._key_names}
        payload = self._payload_from(data, self._writable(include_keys=False))
        if not payload:
            raise ValidationError(
                f"No fields to update for {self.resource.entity_name}; provide at least one writable field",
                field="arguments",
            )
        row = await self.executor.submit(
            f"Update {self.resource.entity_name}",
            lambda: self.executor.backend.update(self.entity, keys, payload),
        )
        if row is None:
            return ToolResult.error(f"{self.resource.entity_name} not found for {self._describe_keys(keys)}")
        return ToolResult.json(strip_omitted(row, self.omitted))

    async def handle_delete(self, arguments: Dict[str, Any]) -> ToolResult:
        self._reject_extra(arguments)
        keys = self._keys_from(arguments)
        removed = await self.executor.submit(
            f"Delete {self.resource.entity_name}",
            lambda: self.executor.backend.delete(self.entity, keys),
        )
        if not removed:
            return ToolResult.error(f"{self.resource.entity_name} not found for {self._describe_keys(keys)}")
        return ToolResult.json({"deleted": int(removed), "keys": keys})

    # --- descriptors -------------------------------------------------------

    def description(self, mode: str) -> str:
        entity = self.resource.entity_name
        keys = ", ".join(self._key_names)
        if mode == "query":
            text = (
                f"Resource description: {self.resource.description}. "
                f"Query {entity} with structured filters (where), select, orderby, top/skip, "
                f"return=rows|count|aggregate"
            )
            text += " and free-text search (q)." if self.translator.search_fields else "."
            foreign_keys = [f.name for f in self.resource.scalar_fields if f.foreign_key_for]
            if foreign_keys:
                text += f" Filter associations through their foreign keys ({', '.join(foreign_keys)})."
        elif mode == "get":
            text = f"Get one {entity} by key(s): {keys}."
        elif mode == "create":
            text = f"Create a new {entity}. Provide fields; the service applies defaults."
        elif mode == "update":
            text = f"Update {entity} by key(s): {keys}. Provide fields to update."
        else:
            text = f"Delete {entity} by key(s): {keys}. This operation cannot be undone."
        return _with_hint(self.resource, mode, text)

    def build(self, modes: Tuple[str, ...]) -> List[ToolDescriptor]:
        schemas = {
            "query": self.query_schema,
            "get": self.key_schema,
            "create": self.create_schema,
            "update": self.update_schema,
            "delete": self.key_schema,
        }
        handlers = {
            "query": self.handle_query,
            "get": self.handle_get,
            "create": self.handle_create,
            "update": self.handle_update,
            "delete": self.handle_delete,
        }
        return [
            ToolDescriptor(
                name=tool_name(self.resource, mode),
                description=self.description(mode),
                input_schema=schemas[mode](),
                handler=handlers[mode],
                source=self.resource.element.qualified_name,
                title=f"{MODE_TITLES[mode]} {self.resource.entity_name}",
                operation=OPERATION_BY_MODE[mode],
                restrictions=self.resource.restrictions,
                hints=MODE_HINTS[mode],
            )
            for mode in modes
        ]


def build_entity_tools(
    resource: ResourceAnnotation,
    defaults: WrapDefaults,
    executor: QueryExecutor,
    *,
    max_top: int,
    default_top: int,
) -> List[ToolDescriptor]:
    modes = wrapped_modes(resource, defaults)
    if not modes:
        return []
    factory = EntityToolFactory(resource, executor, max_top=max_top, default_top=default_top)
    return factory.build(modes)
