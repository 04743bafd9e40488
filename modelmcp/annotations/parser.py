from __future__ import annotations

import logging
import re
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..utils.errors import ConfigurationError
from .constants import (
    AUTHENTICATED_USER,
    DESCRIPTION,
    NAME,
    OPERATIONS_BY_GRANT,
    PROMPT_ROLES,
    PROMPTS,
    REQUIRES,
    RESOURCE,
    RESOURCE_OPTIONS,
    RESTRICT,
    TOOL,
    WRAP,
    WRAP_MODES,
)
from .structures import (
    Annotation,
    PromptAnnotation,
    PromptEntry,
    PromptInput,
    ResourceAnnotation,
    Restriction,
    ToolAnnotation,
    WrapSettings,
)
from .walker import ElementKind, SchemaElement

logger = logging.getLogger("modelmcp.parser")

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
WRAP_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,48}$")
ALL_OPERATIONS = OPERATIONS_BY_GRANT["*"]


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _require_text(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Missing or invalid {what}")
    return value


def _nested(annotations: Mapping[str, Any], tag: str) -> Any:
    """Merge ``tag`` with its flattened ``tag.sub.key`` variants."""
    base = annotations.get(tag)
    prefix = tag + "."
    flat = {key[len(prefix):]: value for key, value in annotations.items() if key.startswith(prefix)}
    if not flat:
        return base

    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, bool):
        merged = {"tools": base}
    elif _is_list(base):
        merged = {"modes": list(base)}
    elif isinstance(base, Mapping):
        merged = dict(base)
    else:
        raise ConfigurationError(f"Invalid {tag} payload: {base!r}")

    for path, value in flat.items():
        head, _, rest = path.partition(".")
        if not rest:
            merged[head] = value
            continue
        current = merged.get(head)
        if isinstance(current, str):
            current = {"*": current}
        elif not isinstance(current, Mapping):
            current = {}
        current = dict(current)
        current[rest] = value
        merged[head] = current
    return merged


def _parse_modes(value: Any) -> Tuple[str, ...]:
    if not _is_list(value):
        raise ConfigurationError(f"Wrap modes must be a list, got {value!r}")
    modes: List[str] = []
    for mode in value:
        if mode not in WRAP_MODES:
            raise ConfigurationError(f"Unknown wrap mode {mode!r}; expected one of {', '.join(WRAP_MODES)}")
        if mode not in modes:
            modes.append(mode)
    return tuple(modes)


def _parse_hints(value: Any) -> Mapping[str, str]:
    if value is None:
        return MappingProxyType({})
    if isinstance(value, str):
        return MappingProxyType({"*": value})
    if isinstance(value, Mapping):
        hints: Dict[str, str] = {}
        for mode, text in value.items():
            if mode != "*" and mode not in WRAP_MODES:
                raise ConfigurationError(f"Hint given for unknown wrap mode {mode!r}")
            if not isinstance(text, str):
                raise ConfigurationError(f"Hint for {mode!r} must be a string")
            hints[mode] = text
        return MappingProxyType(hints)
    raise ConfigurationError(f"Wrap hint must be a string or a per-mode mapping, got {value!r}")


def parse_wrap(annotations: Mapping[str, Any]) -> WrapSettings:
    payload = _nested(annotations, WRAP)
    if payload is None:
        return WrapSettings()
    if isinstance(payload, bool):
        return WrapSettings(enabled=payload)
    if _is_list(payload):
        return WrapSettings(enabled=True, modes=_parse_modes(payload))
    if not isinstance(payload, Mapping):
        raise ConfigurationError(f"Invalid {WRAP} payload: {payload!r}")

    tools = payload.get("tools")
    if tools is not None and not isinstance(tools, bool):
        raise ConfigurationError(f"{WRAP}.tools must be a boolean")
    modes = _parse_modes(payload["modes"]) if payload.get("modes") is not None else None
    name = payload.get("name")
    if name is not None and (not isinstance(name, str) or not WRAP_NAME_PATTERN.match(name)):
        raise ConfigurationError(f"{WRAP}.name must be an identifier, got {name!r}")

    enabled = tools
    if enabled is None and modes is not None:
        enabled = True
    return WrapSettings(enabled=enabled, modes=modes, hints=_parse_hints(payload.get("hint")), name=name)


def _as_names(value: Any, what: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if _is_list(value) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ConfigurationError(f"{what} must be a string or a list of strings")


def parse_restrictions(annotations: Mapping[str, Any]) -> Tuple[Restriction, ...]:
    """Map ``@restrict`` (or, without it, ``@requires``) onto role grants."""
    restrict = annotations.get(RESTRICT)
    if restrict is not None:
        if not _is_list(restrict):
            raise ConfigurationError(f"{RESTRICT} must be a list")
        restrictions: List[Restriction] = []
        for entry in restrict:
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"{RESTRICT} entries must be objects")
            operations: List[str] = []
            for grant in _as_names(entry.get("grant", "*"), f"{RESTRICT}.grant"):
                mapped = OPERATIONS_BY_GRANT.get(grant.upper())
                if mapped is None:
                    raise ConfigurationError(f"Unknown grant {grant!r}")
                operations.extend(op for op in mapped if op not in operations)
            roles = _as_names(entry.get("to", AUTHENTICATED_USER), f"{RESTRICT}.to")
            restrictions.extend(Restriction(role, tuple(operations)) for role in roles)
        return tuple(restrictions)

    requires = annotations.get(REQUIRES)
    if requires:
        return tuple(Restriction(role, ALL_OPERATIONS) for role in _as_names(requires, REQUIRES))
    return ()


def parse_resource_options(value: Any) -> Tuple[str, ...]:
    if value is True:
        return RESOURCE_OPTIONS
    if _is_list(value):
        unknown = [option for option in value if option not in RESOURCE_OPTIONS]
        if unknown:
            raise ConfigurationError(
                f"Unknown resource options {unknown!r}; allowed: {', '.join(RESOURCE_OPTIONS)}"
            )
        return tuple(option for option in RESOURCE_OPTIONS if option in value)
    raise ConfigurationError(f"{RESOURCE} must be true or a list of query options")


def _parse_prompt(entry: Any, index: int) -> PromptEntry:
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"Prompt #{index} must be an object")
    name = _require_text(entry.get("name"), f"prompt #{index} name")
    title = _require_text(entry.get("title"), f"title for prompt '{name}'")
    template = _require_text(entry.get("template"), f"template for prompt '{name}'")
    description = entry.get("description") or title
    if not isinstance(description, str):
        raise ConfigurationError(f"Description for prompt '{name}' must be a string")
    role = entry.get("role", "user")
    if role not in PROMPT_ROLES:
        raise ConfigurationError(f"Role for prompt '{name}' must be one of {', '.join(PROMPT_ROLES)}")

    inputs: List[PromptInput] = []
    raw_inputs = entry.get("inputs") or []
    if not _is_list(raw_inputs):
        raise ConfigurationError(f"Inputs for prompt '{name}' must be a list")
    for raw in raw_inputs:
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Input for prompt '{name}' must be an object")
        key = _require_text(raw.get("key"), f"input key for prompt '{name}'")
        type_name = _require_text(raw.get("type"), f"type of input '{key}' in prompt '{name}'")
        inputs.append(PromptInput(key, type_name))

    return PromptEntry(
        name=name,
        title=title,
        description=description,
        template=template,
        role=role,
        inputs=tuple(inputs),
    )


def _parse_service(element: SchemaElement) -> Optional[PromptAnnotation]:
    payload = element.annotations.get(PROMPTS)
    if payload is None:
        return None
    if not _is_list(payload):
        raise ConfigurationError(f"{PROMPTS} must be a list")
    prompts = tuple(_parse_prompt(entry, index) for index, entry in enumerate(payload))
    return PromptAnnotation(element=element, prompts=prompts)


def _parse_entity(element: SchemaElement) -> ResourceAnnotation:
    annotations = element.annotations
    name = _require_text(annotations.get(NAME), NAME)
    description = _require_text(annotations.get(DESCRIPTION), DESCRIPTION)
    if annotations.get(RESOURCE) in (None, False):
        raise ConfigurationError(f"Entity annotations require {RESOURCE}")
    return ResourceAnnotation(
        element=element,
        name=name,
        description=description,
        options=parse_resource_options(annotations[RESOURCE]),
        wrap=parse_wrap(annotations),
        restrictions=parse_restrictions(annotations),
    )


def _parse_operation(element: SchemaElement) -> ToolAnnotation:
    annotations = element.annotations
    name = _require_text(annotations.get(NAME), NAME)
    if not TOOL_NAME_PATTERN.match(name):
        raise ConfigurationError(f"Tool name {name!r} may only contain letters, digits, '_' and '-'")
    description = _require_text(annotations.get(DESCRIPTION), DESCRIPTION)
    if annotations.get(TOOL) is not True:
        raise ConfigurationError(f"Operation annotations require {TOOL}: true")
    return ToolAnnotation(
        element=element,
        name=name,
        description=description,
        restrictions=parse_restrictions(annotations),
    )


def parse_element(element: SchemaElement) -> Optional[Annotation]:
    """Resolve one element's tags into its canonical annotation.

    Raises :class:`ConfigurationError` for malformed payloads; returns None
    for elements whose tags do not describe a capability.
    """
    if element.kind is ElementKind.SERVICE:
        return _parse_service(element)
    if element.kind is ElementKind.ENTITY:
        return _parse_entity(element)
    return _parse_operation(element)


def parse_annotations(elements: Sequence[SchemaElement]) -> List[Annotation]:
    """Parse all elements, skipping (and logging) those with malformed tags."""
    parsed: List[Annotation] = []
    for element in elements:
        try:
            annotation = parse_element(element)
        except ConfigurationError as exc:
            logger.warning(f"Skipping '{element.qualified_name}': {exc.message}")
            continue
        if annotation is not None:
            parsed.append(annotation)
    return parsed
