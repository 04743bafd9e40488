"""Capability catalog.

The catalog is built once per model load and never changes afterwards; all
sessions share the same instance read-only.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..annotations.parser import parse_annotations
from ..annotations.structures import (
    PromptAnnotation,
    ResourceAnnotation,
    ToolAnnotation,
    WrapDefaults,
)
from ..annotations.walker import SchemaElement
from ..config import Settings
from ..utils.auth import Principal
from ..utils.errors import CatalogCollisionError, ConfigurationError, ValidationError
from .describe_model import ModelDescriber
from .descriptors import (
    PromptDescriptor,
    ResourceDescriptor,
    ResourceTemplateDescriptor,
    ToolDescriptor,
)
from .entity_tools import build_entity_tools
from .executor import QueryExecutor
from .prompts import build_prompts
from .resources import build_resource
from .tools import build_operation_tool

logger = logging.getLogger("modelmcp.catalog")

AnyResource = Union[ResourceDescriptor, ResourceTemplateDescriptor]


class CapabilityCatalog:
    def __init__(
        self,
        tools: Mapping[str, ToolDescriptor],
        resources: Mapping[str, ResourceDescriptor],
        resource_templates: Mapping[str, ResourceTemplateDescriptor],
        prompts: Mapping[str, PromptDescriptor],
        instructions: Optional[str] = None,
    ) -> None:
        self.tools = MappingProxyType(dict(tools))
        self.resources = MappingProxyType(dict(resources))
        self.resource_templates = MappingProxyType(dict(resource_templates))
        self.prompts = MappingProxyType(dict(prompts))
        self.instructions = instructions

    @classmethod
    def empty(cls) -> "CapabilityCatalog":
        return cls({}, {}, {}, {})

    @property
    def capabilities(self) -> Dict[str, Any]:
        return {
            "tools": {"listChanged": False},
            "resources": {"listChanged": False, "subscribe": False},
            "prompts": {"listChanged": False},
        }

    def list_tools(self, principal: Principal) -> List[ToolDescriptor]:
        return [tool for tool in self.tools.values() if tool.permits(principal)]

    def get_tool(self, name: str, principal: Principal) -> Optional[ToolDescriptor]:
        tool = self.tools.get(name)
        if tool is None or not tool.permits(principal):
            return None
        return tool

    def list_resources(self, principal: Principal) -> List[ResourceDescriptor]:
        return [r for r in self.resources.values() if r.permits(principal)]

    def list_resource_templates(self, principal: Principal) -> List[ResourceTemplateDescriptor]:
        return [t for t in self.resource_templates.values() if t.permits(principal)]

    def resolve_resource(self, uri: str, principal: Principal) -> Tuple[AnyResource, Dict[str, str]]:
        """Find the resource serving ``uri`` and its query parameters.

        Raises :class:`ValidationError` for unknown URIs and for URIs that
        carry parameters the resource does not allow.
        """
        static = self.resources.get(uri)
        if static is not None and static.permits(principal):
            return static, {}

        base = uri.partition("?")[0]
        for template in self.resource_templates.values():
            if template.template.base != base or not template.permits(principal):
                continue
            params = template.template.match(uri)
            if params is None:
                raise ValidationError(
                    f"Resource URI {uri} uses unsupported parameters; allowed: "
                    f"{', '.join(template.allowed_parameters)}",
                    field="uri",
                )
            return template, params

        raise ValidationError(f"Resource {uri} not found", field="uri")

    def get_prompt(self, name: str) -> Optional[PromptDescriptor]:
        return self.prompts.get(name)


class _Registry:
    """Collects descriptors and refuses duplicate protocol names."""

    def __init__(self) -> None:
        self.tools: Dict[str, ToolDescriptor] = {}
        self.resources: Dict[str, ResourceDescriptor] = {}
        self.resource_templates: Dict[str, ResourceTemplateDescriptor] = {}
        self.prompts: Dict[str, PromptDescriptor] = {}
        self._resource_names: Dict[str, str] = {}
        self._resource_uris: Dict[str, str] = {}

    @staticmethod
    def _check(kind: str, table: Mapping[str, str], key: str, source: str) -> None:
        existing = table.get(key)
        if existing is not None:
            raise CatalogCollisionError(
                f"{kind} '{key}' from '{source}' collides with the one from '{existing}'; "
                f"rename one of them with @mcp.name or @mcp.wrap.name",
                data={"kind": kind, "name": key, "sources": [existing, source]},
            )

    def add_tool(self, tool: ToolDescriptor) -> None:
        self._check("Tool", {k: v.source for k, v in self.tools.items()}, tool.name, tool.source)
        self.tools[tool.name] = tool

    def add_resource(self, resource: AnyResource) -> None:
        self._check("Resource name", self._resource_names, resource.name, resource.source)
        self._check("Resource URI", self._resource_uris, resource.uri, resource.source)
        self._resource_names[resource.name] = resource.source
        self._resource_uris[resource.uri] = resource.source
        if isinstance(resource, ResourceTemplateDescriptor):
            self.resource_templates[resource.name] = resource
        else:
            self.resources[resource.uri] = resource

    def add_prompt(self, prompt: PromptDescriptor) -> None:
        self._check("Prompt", {k: v.source for k, v in self.prompts.items()}, prompt.name, prompt.source)
        self.prompts[prompt.name] = prompt


class CatalogBuilder:
    """Turns annotated schema elements into a :class:`CapabilityCatalog`.

    Malformed elements are skipped with a log entry. Name collisions are not:
    they abort the build with :class:`CatalogCollisionError` so that no
    capability silently shadows another.
    """

    def __init__(self, executor: QueryExecutor, settings: Settings) -> None:
        self.executor = executor
        self.settings = settings

    def build(
        self,
        elements: Sequence[SchemaElement],
        defaults: Optional[WrapDefaults] = None,
        *,
        instructions: Optional[str] = None,
    ) -> CapabilityCatalog:
        defaults = defaults or WrapDefaults.from_settings(self.settings)
        registry = _Registry()
        resources: List[ResourceAnnotation] = []
        operations: List[ToolAnnotation] = []
        tools_by_entity: Dict[str, List[str]] = {}

        for annotation in parse_annotations(elements):
            source = annotation.element.qualified_name
            try:
                if isinstance(annotation, PromptAnnotation):
                    for prompt in build_prompts(annotation):
                        registry.add_prompt(prompt)
                elif isinstance(annotation, ResourceAnnotation):
                    registry.add_resource(
                        build_resource(
                            annotation,
                            self.executor,
                            scheme=self.settings.resource_scheme,
                            max_top=self.settings.resource_max_page_size,
                            default_top=self.settings.resource_default_page_size,
                        )
                    )
                    tools = build_entity_tools(
                        annotation,
                        defaults,
                        self.executor,
                        max_top=self.settings.max_page_size,
                        default_top=self.settings.default_page_size,
                    )
                    for tool in tools:
                        registry.add_tool(tool)
                    tools_by_entity[source] = [tool.name for tool in tools]
                    resources.append(annotation)
                else:
                    registry.add_tool(build_operation_tool(annotation, self.executor))
                    operations.append(annotation)
            except CatalogCollisionError:
                raise
            except ConfigurationError as exc:
                logger.warning(f"Skipping '{source}': {exc.message}")

        if self.settings.enable_model_description:
            registry.add_tool(ModelDescriber(resources, operations, tools_by_entity, registry.tools).build())

        catalog = CapabilityCatalog(
            registry.tools,
            registry.resources,
            registry.resource_templates,
            registry.prompts,
            instructions=instructions,
        )
        logger.info(
            f"Catalog built: {len(catalog.tools)} tools, "
            f"{len(catalog.resources) + len(catalog.resource_templates)} resources, "
            f"{len(catalog.prompts)} prompts"
        )
        return catalog


def load_instructions(settings: Settings) -> Optional[str]:
    """Instructions text from MCP_INSTRUCTIONS or a markdown MCP_INSTRUCTIONS_FILE."""
    if settings.instructions_file:
        path = Path(settings.instructions_file)
        if path.suffix.lower() != ".md":
            logger.error(f"Instructions file {path} must be a markdown (.md) file, ignoring it")
            return settings.instructions
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error(f"Could not read instructions file {path}: {exc}")
            return settings.instructions
    return settings.instructions


class CatalogProvider:
    """One-shot, async-safe catalog initialization.

    The first caller starts the build; every concurrent caller awaits the
    same task. A failed build is not cached, so the next caller retries.
    """

    def __init__(self, factory: Callable[[], Awaitable[CapabilityCatalog]]) -> None:
        self._factory = factory
        self._task: Optional[asyncio.Task] = None
        self._catalog: Optional[CapabilityCatalog] = None

    @classmethod
    def of(cls, catalog: CapabilityCatalog) -> "CatalogProvider":
        async def ready() -> CapabilityCatalog:
            return catalog

        return cls(ready)

    @property
    def catalog(self) -> Optional[CapabilityCatalog]:
        return self._catalog

    async def get(self) -> CapabilityCatalog:
        if self._catalog is not None:
            return self._catalog
        if self._task is None:
            self._task = asyncio.ensure_future(self._factory())
        task = self._task
        try:
            catalog = await asyncio.shield(task)
        except Exception:
            if self._task is task:
                self._task = None
            raise
        self._catalog = catalog
        return catalog
