"""Schema walker.

Turns a CSN-like definition mapping (``qualified name -> definition``) into
an ordered list of read-only :class:`SchemaElement` snapshots. Only elements
carrying at least one ``@mcp`` tag are emitted; the walker never mutates the
definitions it is given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from ..utils.errors import ConfigurationError
from .constants import (
    ASSOCIATION_TYPES,
    CORE_COMPUTED,
    FOREIGN_KEY_FOR,
    HINT,
    MCP_ANNOTATION_PREFIX,
    OMIT,
    REQUIRES,
    RESTRICT,
)

logger = logging.getLogger("modelmcp.walker")

_MAX_TYPE_DEPTH = 16


class ElementKind(str, Enum):
    SERVICE = "service"
    ENTITY = "entity"
    FUNCTION = "function"
    ACTION = "action"


@dataclass(frozen=True)
class ElementField:
    name: str
    type: str
    is_key: bool = False
    is_computed: bool = False
    is_association: bool = False
    is_omitted: bool = False
    is_array: bool = False
    target: Optional[str] = None
    foreign_key_for: Optional[str] = None
    hint: Optional[str] = None


@dataclass(frozen=True)
class KeyField:
    name: str
    type: str
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityKeySet:
    """Ordered key fields of an entity with association keys flattened."""

    fields: Tuple[KeyField, ...] = ()

    def __iter__(self) -> Iterator[KeyField]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __bool__(self) -> bool:
        return bool(self.fields)

    @property
    def names(self) -> List[str]:
        return [key.name for key in self.fields]

    def type_of(self, name: str) -> Optional[str]:
        for key in self.fields:
            if key.name == name:
                return key.type
        return None


EMPTY_KEYS = EntityKeySet()


@dataclass(frozen=True)
class SchemaElement:
    qualified_name: str
    kind: ElementKind
    service_name: str
    local_name: str
    fields: Tuple[ElementField, ...] = ()
    annotations: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    keys: EntityKeySet = EMPTY_KEYS
    bound_to: Optional[str] = None
    returns: Optional[str] = None

    @property
    def service_short_name(self) -> str:
        return self.service_name.rsplit(".", 1)[-1]

    def get_field(self, name: str) -> Optional[ElementField]:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def has_tag(self, tag: str) -> bool:
        return any(key == tag or key.startswith(tag + ".") for key in self.annotations)


def _elements_of(definition: Mapping[str, Any], member: str = "elements") -> Mapping[str, Any]:
    members = definition.get(member)
    return members if isinstance(members, Mapping) else {}


def _has_mcp_tags(definition: Mapping[str, Any]) -> bool:
    return any(isinstance(key, str) and key.startswith(MCP_ANNOTATION_PREFIX + ".") for key in definition)


def _annotation_bag(definition: Mapping[str, Any]) -> Mapping[str, Any]:
    bag = {
        key: value
        for key, value in definition.items()
        if isinstance(key, str)
        and (key.startswith(MCP_ANNOTATION_PREFIX + ".") or key in (REQUIRES, RESTRICT))
    }
    return MappingProxyType(bag)


def resolve_type(
    definitions: Mapping[str, Any],
    element: Mapping[str, Any],
    _depth: int = 0,
) -> Tuple[str, bool]:
    """Resolve an element's type to a builtin name.

    Returns ``(type_name, is_array)``. Derived types and typed references are
    followed until a ``cds.*`` builtin is reached.
    """
    if _depth > _MAX_TYPE_DEPTH:
        raise ConfigurationError(f"Type resolution exceeded {_MAX_TYPE_DEPTH} levels")

    items = element.get("items")
    if isinstance(items, Mapping):
        item_type, _ = resolve_type(definitions, items, _depth + 1)
        return item_type, True

    raw = element.get("type")
    if raw is None:
        if element.get("target"):
            return "Association", False
        return "String", False

    if isinstance(raw, Mapping):
        ref = raw.get("ref")
        if not isinstance(ref, Sequence) or isinstance(ref, str) or not ref:
            raise ConfigurationError(f"Malformed type reference: {raw!r}")
        current: Any = definitions.get(ref[0])
        for segment in ref[1:]:
            if not isinstance(current, Mapping):
                break
            current = _elements_of(current).get(segment)
        if not isinstance(current, Mapping):
            raise ConfigurationError(f"Unresolvable type reference: {'.'.join(map(str, ref))}")
        return resolve_type(definitions, current, _depth + 1)

    if not isinstance(raw, str):
        raise ConfigurationError(f"Malformed type: {raw!r}")
    if raw.startswith("cds."):
        return raw[4:], False

    referenced = definitions.get(raw)
    if isinstance(referenced, Mapping) and referenced is not element:
        return resolve_type(definitions, referenced, _depth + 1)
    return raw.rsplit(".", 1)[-1], False


def _is_association(definitions: Mapping[str, Any], element: Mapping[str, Any]) -> bool:
    type_name, _ = resolve_type(definitions, element)
    return type_name in ASSOCIATION_TYPES


def _key_fields(
    definitions: Mapping[str, Any],
    entity_name: str,
    chain: Tuple[str, ...],
) -> List[KeyField]:
    if entity_name in chain:
        cycle = " -> ".join(chain + (entity_name,))
        raise ConfigurationError(f"Cyclic association key chain: {cycle}")
    entity = definitions.get(entity_name)
    if not isinstance(entity, Mapping):
        raise ConfigurationError(f"Unknown association target '{entity_name}'")

    result: List[KeyField] = []
    for name, element in _elements_of(entity).items():
        if not isinstance(element, Mapping) or not element.get("key"):
            continue
        result.extend(_expand_field(definitions, name, element, chain + (entity_name,)))
    return result


def _expand_field(
    definitions: Mapping[str, Any],
    name: str,
    element: Mapping[str, Any],
    chain: Tuple[str, ...],
) -> List[KeyField]:
    if not _is_association(definitions, element):
        type_name, _ = resolve_type(definitions, element)
        return [KeyField(name, type_name, (name,))]

    target = element.get("target")
    if not isinstance(target, str):
        raise ConfigurationError(f"Association '{name}' has no target")
    target_keys = _key_fields(definitions, target, chain)

    refs = [
        ref["ref"][0]
        for ref in element.get("keys") or []
        if isinstance(ref, Mapping) and isinstance(ref.get("ref"), Sequence) and ref["ref"]
    ]
    if refs:
        target_keys = [key for key in target_keys if key.path[0] in refs]

    return [
        KeyField(f"{name}_{key.name}", key.type, (name,) + key.path)
        for key in target_keys
    ]


def resolve_keys(definitions: Mapping[str, Any], entity_name: str) -> EntityKeySet:
    """Resolve the flattened key set of ``entity_name``.

    An association-typed key contributes one ``assoc_targetKey`` field per
    key field of its target, recursively, typed with the target's key type.
    A cyclic chain raises :class:`ConfigurationError`.
    """
    return EntityKeySet(tuple(_key_fields(definitions, entity_name, ())))


def _is_managed_to_one(element: Mapping[str, Any]) -> bool:
    if "on" in element or not element.get("target"):
        return False
    cardinality = element.get("cardinality")
    if isinstance(cardinality, Mapping) and cardinality.get("max") not in (None, 1, "1"):
        return False
    return True


def _collect_fields(
    definitions: Mapping[str, Any],
    owner: str,
    members: Mapping[str, Any],
) -> Tuple[ElementField, ...]:
    declared: Set[str] = set(members)
    fields: List[ElementField] = []

    for name, element in members.items():
        if not isinstance(element, Mapping):
            logger.debug(f"Ignoring malformed member '{owner}.{name}'")
            continue
        type_name, is_array = resolve_type(definitions, element)
        is_association = type_name in ASSOCIATION_TYPES
        hint = element.get(HINT)
        fields.append(
            ElementField(
                name=name,
                type=type_name,
                is_key=bool(element.get("key")),
                is_computed=bool(element.get(CORE_COMPUTED) or element.get("virtual")),
                is_association=is_association,
                is_omitted=bool(element.get(OMIT)),
                is_array=is_array,
                target=element.get("target") if is_association else None,
                foreign_key_for=element.get(FOREIGN_KEY_FOR),
                hint=hint if isinstance(hint, str) else None,
            )
        )
        if is_association and _is_managed_to_one(element):
            fields.extend(_foreign_key_fields(definitions, owner, name, element, declared))

    return tuple(fields)


def _foreign_key_fields(
    definitions: Mapping[str, Any],
    owner: str,
    name: str,
    element: Mapping[str, Any],
    declared: Set[str],
) -> List[ElementField]:
    # only key associations take part in the owner's key chain
    chain = (owner,) if element.get("key") else ()
    try:
        keys = _expand_field(definitions, name, element, chain)
    except ConfigurationError:
        if element.get("key"):
            raise
        logger.debug(f"No foreign keys derived for '{owner}.{name}'")
        return []
    return [
        ElementField(
            name=key.name,
            type=key.type,
            is_key=bool(element.get("key")),
            is_omitted=bool(element.get(OMIT)),
            foreign_key_for=name,
        )
        for key in keys
        if key.name not in declared
    ]


def split_qualified_name(name: str, services: Sequence[str]) -> Tuple[str, str]:
    """Split ``name`` into ``(service, local name)``.

    The longest dotted prefix that is itself a service wins; otherwise the
    last dot separates the two.
    """
    best: Optional[str] = None
    for service in services:
        if name.startswith(service + ".") and (best is None or len(service) > len(best)):
            best = service
    if best is not None:
        return best, name[len(best) + 1:]
    if "." in name:
        service, _, local = name.rpartition(".")
        return service, local
    return "", name


def _build_element(
    definitions: Mapping[str, Any],
    name: str,
    definition: Mapping[str, Any],
    kind: ElementKind,
    services: Sequence[str],
) -> SchemaElement:
    if kind is ElementKind.SERVICE:
        return SchemaElement(
            qualified_name=name,
            kind=kind,
            service_name=name,
            local_name=name.rsplit(".", 1)[-1],
            annotations=_annotation_bag(definition),
        )

    service, local = split_qualified_name(name, services)
    if kind is ElementKind.ENTITY:
        return SchemaElement(
            qualified_name=name,
            kind=kind,
            service_name=service,
            local_name=local,
            fields=_collect_fields(definitions, name, _elements_of(definition)),
            annotations=_annotation_bag(definition),
            keys=resolve_keys(definitions, name),
        )

    return SchemaElement(
        qualified_name=name,
        kind=kind,
        service_name=service,
        local_name=local,
        fields=_collect_fields(definitions, name, _elements_of(definition, "params")),
        annotations=_annotation_bag(definition),
        returns=_returns_of(definitions, definition),
    )


def _returns_of(definitions: Mapping[str, Any], definition: Mapping[str, Any]) -> Optional[str]:
    returns = definition.get("returns")
    if not isinstance(returns, Mapping):
        return None
    type_name, is_array = resolve_type(definitions, returns)
    return f"{type_name}[]" if is_array else type_name


def _bound_operations(
    definitions: Mapping[str, Any],
    entity_name: str,
    entity: Mapping[str, Any],
    services: Sequence[str],
) -> List[SchemaElement]:
    actions = _elements_of(entity, "actions")
    if not actions:
        return []

    service, entity_local = split_qualified_name(entity_name, services)
    keys: Optional[EntityKeySet] = None
    bound: List[SchemaElement] = []
    for action_name, action in actions.items():
        if not isinstance(action, Mapping) or not _has_mcp_tags(action):
            continue
        try:
            if keys is None:
                keys = resolve_keys(definitions, entity_name)
            kind = ElementKind.FUNCTION if action.get("kind") == "function" else ElementKind.ACTION
            bound.append(
                SchemaElement(
                    qualified_name=f"{entity_name}.{action_name}",
                    kind=kind,
                    service_name=service,
                    local_name=action_name,
                    fields=_collect_fields(definitions, entity_name, _elements_of(action, "params")),
                    annotations=_annotation_bag(action),
                    keys=keys,
                    bound_to=entity_local,
                    returns=_returns_of(definitions, action),
                )
            )
        except ConfigurationError as exc:
            logger.error(f"Skipping bound operation '{entity_name}.{action_name}': {exc.message}")
    return bound


def walk(definitions: Optional[Mapping[str, Any]]) -> List[SchemaElement]:
    """Return the annotated elements of ``definitions`` in declaration order."""
    if not definitions:
        logger.debug("No definitions to walk")
        return []
    if not isinstance(definitions, Mapping):
        logger.error(f"Model definitions must be an object, got {type(definitions).__name__}; nothing to expose")
        return []

    services = [
        name
        for name, definition in definitions.items()
        if isinstance(definition, Mapping) and definition.get("kind") == ElementKind.SERVICE.value
    ]
    kinds = {kind.value: kind for kind in ElementKind}

    elements: List[SchemaElement] = []
    for name, definition in definitions.items():
        if not isinstance(definition, Mapping):
            continue
        kind = kinds.get(definition.get("kind"))
        if kind is None:
            continue
        try:
            if _has_mcp_tags(definition):
                elements.append(_build_element(definitions, name, definition, kind, services))
        except ConfigurationError as exc:
            logger.error(f"Skipping '{name}': {exc.message}")
            continue
        if kind is ElementKind.ENTITY:
            elements.extend(_bound_operations(definitions, name, definition, services))

    logger.info(f"Schema walk found {len(elements)} annotated elements")
    return elements


__all__ = [
    "ElementKind",
    "ElementField",
    "KeyField",
    "EntityKeySet",
    "SchemaElement",
    "resolve_keys",
    "resolve_type",
    "split_qualified_name",
    "walk",
]
