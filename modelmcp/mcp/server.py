"""Per-session MCP protocol endpoint."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ..schemas.jsonrpc import JsonRpcMessage
from ..utils.auth import Principal
from ..utils.errors import (
    INTERNAL_ERROR,
    InvalidRequestError,
    McpError,
    MethodNotFoundError,
    ValidationError,
    error_envelope,
    jsonrpc_error,
)
from .catalog import CapabilityCatalog

logger = logging.getLogger("modelmcp.server")

SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

MethodHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def _require_str(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing or invalid parameter '{name}'", field=name, expected="string")
    return value


def _optional_object(params: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = params.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"Parameter '{name}' must be an object", field=name, expected="object")
    return value


class ProtocolServer:
    """Answers JSON-RPC requests for one session against a shared catalog."""

    def __init__(self, catalog: CapabilityCatalog, *, server_info: Mapping[str, str], principal: Principal) -> None:
        self.catalog = catalog
        self.server_info = dict(server_info)
        self.principal = principal
        self.initialized = False
        self.protocol_version: Optional[str] = None
        self.client_info: Dict[str, Any] = {}
        self._handlers: Dict[str, MethodHandler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/templates/list": self._resource_templates_list,
            "resources/read": self._resources_read,
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
        }

    async def handle(self, message: JsonRpcMessage) -> Optional[Dict[str, Any]]:
        """Process one message; notifications yield None."""
        if message.is_notification:
            self._notification(message)
            return None

        try:
            handler = self._handlers.get(message.method)
            if handler is None:
                raise MethodNotFoundError(f"Method not found: {message.method}")
            if message.method == "initialize" and self.initialized:
                raise InvalidRequestError("Invalid Request: Server already initialized")
            if message.method not in ("initialize", "ping") and not self.initialized:
                raise InvalidRequestError("Invalid Request: Server not initialized")
            result = await handler(message.params or {})
            return {"jsonrpc": "2.0", "id": message.id, "result": result}
        except McpError as exc:
            logger.info(f"{message.method} failed with {exc.code}: {exc.message}")
            return error_envelope(message.id, exc)
        except Exception as exc:
            logger.exception(f"Unhandled error in {message.method}: {exc}")
            return jsonrpc_error(message.id, INTERNAL_ERROR, "Internal error")

    def _notification(self, message: JsonRpcMessage) -> None:
        if message.method == "notifications/initialized":
            logger.debug("Client confirmed initialization")
        elif message.method == "notifications/cancelled":
            # in-flight queries are not interrupted
            logger.debug(f"Client cancelled request {(message.params or {}).get('requestId')}")
        else:
            logger.debug(f"Ignoring notification {message.method}")

    async def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        if requested is not None and not isinstance(requested, str):
            raise ValidationError("protocolVersion must be a string", field="protocolVersion", expected="string")
        self.protocol_version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        self.client_info = _optional_object(params, "clientInfo")
        self.initialized = True
        logger.info(
            f"Initialized session for {self.client_info.get('name', 'unknown client')} "
            f"(protocol {self.protocol_version})"
        )
        result: Dict[str, Any] = {
            "protocolVersion": self.protocol_version,
            "capabilities": self.catalog.capabilities,
            "serverInfo": self.server_info,
        }
        if self.catalog.instructions:
            result["instructions"] = self.catalog.instructions
        return result

    async def _ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": [tool.to_dict() for tool in self.catalog.list_tools(self.principal)]}

    async def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = _require_str(params, "name")
        arguments = _optional_object(params, "arguments")
        tool = self.catalog.get_tool(name, self.principal)
        if tool is None:
            raise ValidationError(f"Tool {name} not found", field="name")
        logger.info(f"Calling tool {name}")
        result = await tool.call(arguments, self.principal)
        return result.to_dict()

    async def _resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resources": [r.to_dict() for r in self.catalog.list_resources(self.principal)]}

    async def _resource_templates_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resourceTemplates": [t.to_dict() for t in self.catalog.list_resource_templates(self.principal)]}

    async def _resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = _require_str(params, "uri")
        resource, query = self.catalog.resolve_resource(uri, self.principal)
        return {"contents": await resource.handler(uri, query)}

    async def _prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"prompts": [p.to_dict() for p in self.catalog.prompts.values()]}

    async def _prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = _require_str(params, "name")
        prompt = self.catalog.get_prompt(name)
        if prompt is None:
            raise ValidationError(f"Prompt {name} not found", field="name")
        return prompt.render(_optional_object(params, "arguments"))
