"""
Model annotations

- walker: reads the definition set into SchemaElement snapshots
- parser: resolves @mcp tag payloads into canonical annotation structures
"""

from .parser import parse_annotations, parse_element
from .structures import (
    PromptAnnotation,
    ResourceAnnotation,
    ToolAnnotation,
    WrapDefaults,
    WrapSettings,
    resolve_wrap_modes,
)
from .walker import ElementKind, EntityKeySet, SchemaElement, resolve_keys, walk

__all__ = [
    "ElementKind",
    "EntityKeySet",
    "SchemaElement",
    "PromptAnnotation",
    "ResourceAnnotation",
    "ToolAnnotation",
    "WrapDefaults",
    "WrapSettings",
    "parse_annotations",
    "parse_element",
    "resolve_keys",
    "resolve_wrap_modes",
    "walk",
]
