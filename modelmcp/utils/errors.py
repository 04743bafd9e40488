from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("modelmcp.errors")

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000

NO_VALID_SESSION_MESSAGE = "Bad Request: No valid session ID provided"

# Patterns that might leak sensitive information
SENSITIVE_PATTERNS = [
    r"api[_-]?key[=:\s]+\S+",
    r"password[=:\s]+\S+",
    r"token[=:\s]+\S+",
    r"secret[=:\s]+\S+",
    r"bearer\s+\S+",
    r"\b(?:\d{1,3}\.){3}\d{1,3}\b",  # IP addresses
    r"/home/\S+",  # File paths
    r"/var/\S+",
    r"/etc/\S+",
    r"traceback",
    r"stack trace",
]


def sanitize_error_message(message: str) -> str:
    """Remove potentially sensitive information from error messages.

    Backend failures can carry connection strings, credentials or file paths
    in their text. Everything that reaches a protocol client passes through
    here first.
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

    # Truncate very long messages that might contain stack traces
    if len(sanitized) > 500:
        sanitized = sanitized[:500] + "... [truncated]"

    return sanitized


class McpError(Exception):
    """Base class for errors that map onto a JSON-RPC error object."""

    code: int = INTERNAL_ERROR
    http_status: int = 200

    def __init__(self, message: str, *, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


class ConfigurationError(McpError):
    """Malformed or contradictory annotations or configuration."""


class CatalogCollisionError(ConfigurationError):
    """Two source elements resolved to the same protocol name."""


class ValidationError(McpError):
    """Bad client input: unknown field, wrong type, missing key, oversized page."""

    code = INVALID_PARAMS

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = dict(data or {})
        if field is not None:
            payload["field"] = field
        if expected is not None:
            payload["expected"] = expected
        super().__init__(message, data=payload or None)
        self.field = field
        self.expected = expected


class SessionError(McpError):
    code = SERVER_ERROR
    http_status = 400

    def __init__(self, message: str = NO_VALID_SESSION_MESSAGE, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(McpError):
    code = SERVER_ERROR
    http_status = 401

    def __init__(self, message: str = "Unauthorized", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class BackendError(McpError):
    """The downstream data engine failed. The message is always sanitized."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, *, internal_message: Optional[str] = None, **kwargs: Any) -> None:
        if internal_message:
            logger.error(f"[backend_error] Internal: {internal_message}")
        super().__init__(sanitize_error_message(message), **kwargs)


class MethodNotFoundError(McpError):
    code = METHOD_NOT_FOUND


class InvalidRequestError(McpError):
    code = INVALID_REQUEST
    http_status = 400


class ParseError(McpError):
    code = PARSE_ERROR
    http_status = 400


def safe_backend_error(user_message: str, internal_details: str) -> BackendError:
    """Create a BackendError with separate user and internal messages.

    Use this where the client should only see a generic message while the
    full failure goes to the log.
    """
    return BackendError(user_message, internal_message=internal_details)


def jsonrpc_error(
    request_id: Union[str, int, None],
    code: int,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def error_envelope(request_id: Union[str, int, None], exc: McpError) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": exc.to_error()}
