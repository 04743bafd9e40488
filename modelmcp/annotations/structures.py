"""Canonical, parse-time resolved annotation structures.

Every tag payload that can be written in several shapes (``true``, a list,
an object, flattened ``@mcp.wrap.*`` keys) is resolved into exactly one of
these frozen dataclasses by :mod:`modelmcp.annotations.parser`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import AbstractSet, Mapping, Optional, Tuple, Union

from ..config import DEFAULT_WRAP_MODES
from .walker import ElementField, EntityKeySet, SchemaElement


@dataclass(frozen=True)
class Restriction:
    role: str
    operations: Tuple[str, ...]


def permits(restrictions: Tuple[Restriction, ...], operation: str, roles: AbstractSet[str]) -> bool:
    """True when one of ``roles`` is granted ``operation``. No restrictions grants all."""
    if not restrictions:
        return True
    return any(
        operation in restriction.operations and (restriction.role == "any" or restriction.role in roles)
        for restriction in restrictions
    )


@dataclass(frozen=True)
class WrapSettings:
    """Entity-level wrap configuration.

    ``enabled`` and ``modes`` stay ``None`` when the entity does not set them,
    so the global configuration can fill the gap.
    """

    enabled: Optional[bool] = None
    modes: Optional[Tuple[str, ...]] = None
    hints: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    name: Optional[str] = None

    def hint_for(self, mode: str) -> Optional[str]:
        return self.hints.get(mode) or self.hints.get("*")


@dataclass(frozen=True)
class WrapDefaults:
    enabled: bool = False
    modes: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_settings(cls, settings) -> "WrapDefaults":
        return cls(
            enabled=settings.wrap_entities_to_actions,
            modes=settings.configured_wrap_modes,
        )


def is_wrapped(wrap: WrapSettings, defaults: WrapDefaults) -> bool:
    if wrap.enabled is not None:
        return wrap.enabled
    return defaults.enabled


def resolve_wrap_modes(wrap: WrapSettings, defaults: WrapDefaults) -> Tuple[str, ...]:
    # entity modes replace the global set, they are never merged with it
    if wrap.modes is not None:
        return wrap.modes
    if defaults.modes is not None:
        return defaults.modes
    return DEFAULT_WRAP_MODES


@dataclass(frozen=True)
class ResourceAnnotation:
    element: SchemaElement
    name: str
    description: str
    options: Tuple[str, ...]
    wrap: WrapSettings = field(default_factory=WrapSettings)
    restrictions: Tuple[Restriction, ...] = ()

    @property
    def keys(self) -> EntityKeySet:
        return self.element.keys

    @property
    def service_name(self) -> str:
        return self.element.service_name

    @property
    def entity_name(self) -> str:
        return self.element.local_name

    @property
    def scalar_fields(self) -> Tuple[ElementField, ...]:
        """Fields a client may see, filter, sort and select."""
        return tuple(f for f in self.element.fields if not f.is_association and not f.is_omitted)

    @property
    def writable_fields(self) -> Tuple[ElementField, ...]:
        return tuple(f for f in self.scalar_fields if not f.is_computed)

    @property
    def omitted_fields(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.element.fields if f.is_omitted)


@dataclass(frozen=True)
class ToolAnnotation:
    element: SchemaElement
    name: str
    description: str
    restrictions: Tuple[Restriction, ...] = ()

    @property
    def is_bound(self) -> bool:
        return self.element.bound_to is not None


@dataclass(frozen=True)
class PromptInput:
    key: str
    type: str


@dataclass(frozen=True)
class PromptEntry:
    name: str
    title: str
    description: str
    template: str
    role: str = "user"
    inputs: Tuple[PromptInput, ...] = ()


@dataclass(frozen=True)
class PromptAnnotation:
    element: SchemaElement
    prompts: Tuple[PromptEntry, ...]


Annotation = Union[ResourceAnnotation, ToolAnnotation, PromptAnnotation]
