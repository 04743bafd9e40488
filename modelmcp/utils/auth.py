"""
Authentication boundary for /mcp
================================

The host decides who the caller is. This module only consumes that
decision:

- MCP_AUTH=none    → every request runs as a privileged principal
- MCP_AUTH=inherit → the configured authenticator must return a principal,
                     otherwise the request is answered with 401 before any
                     session lookup happens

The default authenticator accepts Basic credentials (MCP_AUTH_USER /
MCP_AUTH_PASS) and static bearer tokens (MCP_AUTH_TOKENS).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..annotations.constants import AUTHENTICATED_USER
from ..config import Settings, split_csv
from .errors import AuthorizationError, error_envelope

logger = logging.getLogger("modelmcp.auth")

# Protected path prefixes
PROTECTED_PREFIXES = ["/mcp"]

# Public paths (no auth required)
PUBLIC_PATHS = [
    "/health",
    "/mcp/health",
]


@dataclass(frozen=True)
class Principal:
    user: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    privileged: bool = False

    def has_role(self, role: str) -> bool:
        return self.privileged or role in self.roles

    @property
    def effective_roles(self) -> FrozenSet[str]:
        return self.roles | {AUTHENTICATED_USER} if self.user != "anonymous" else self.roles

    @classmethod
    def system(cls) -> "Principal":
        return cls(user="system", privileged=True)


ANONYMOUS = Principal(user="anonymous")

Authenticator = Callable[[Request], Awaitable[Optional[Principal]]]


def _token_identity(token: str) -> str:
    """Stable user name for a bearer token, derived from the whole token."""
    return f"token:{hashlib.sha256(token.encode()).hexdigest()[:12]}"


def _safe_compare(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    if not a or not b:
        return False
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _extract_basic_auth(request: Request) -> Tuple[str, str]:
    """Extract username and password from Basic Auth header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:6].lower() == "basic ":
        try:
            creds = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return ("", "")
        if ":" in creds:
            user, password = creds.split(":", 1)
            return (user, password)
    return ("", "")


class BasicAuthenticator:
    """Checks Basic credentials and static bearer tokens from settings."""

    def __init__(self, settings: Settings) -> None:
        self.user = settings.auth_user
        self.password = settings.auth_pass
        self.tokens = split_csv(settings.auth_tokens)
        self.roles = frozenset(split_csv(settings.auth_roles))

    async def __call__(self, request: Request) -> Optional[Principal]:
        auth_header = request.headers.get("Authorization", "")
        client_ip = request.client.host if request.client else "unknown"

        if auth_header[:7].lower() == "bearer ":
            token = auth_header[7:].strip()
            if any(_safe_compare(token, known) for known in self.tokens):
                logger.debug(f"AUTH_OK | IP: {client_ip} | Method: bearer")
                return Principal(user=_token_identity(token), roles=self.roles)
            logger.warning(f"AUTH_FAIL | IP: {client_ip} | Reason: invalid_bearer")
            return None

        if auth_header[:6].lower() == "basic ":
            if not self.user or not self.password:
                logger.error(f"AUTH_ERROR | IP: {client_ip} | Reason: auth_not_configured")
                return None
            username, password = _extract_basic_auth(request)
            if _safe_compare(username, self.user) and _safe_compare(password, self.password):
                logger.debug(f"AUTH_OK | IP: {client_ip} | Method: basic | User: {username}")
                return Principal(user=username, roles=self.roles)
            logger.warning(f"AUTH_FAIL | IP: {client_ip} | Reason: invalid_basic")
            return None

        logger.warning(f"AUTH_FAIL | IP: {client_ip} | Reason: no_credentials | Path: {request.url.path}")
        return None


class AuthMiddleware(BaseHTTPMiddleware):
    """Resolves the caller before the /mcp routes run.

    The resolved principal is stored on ``request.state.principal``.
    """

    def __init__(self, app: ASGIApp, *, mode: str, authenticator: Optional[Authenticator] = None) -> None:
        super().__init__(app)
        self.mode = mode
        self.authenticator = authenticator

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Skip auth for public paths
        if any(path == public or path.startswith(public + "/") for public in PUBLIC_PATHS):
            return await call_next(request)

        if not any(path == prefix or path.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES):
            return await call_next(request)

        if self.mode == "none":
            request.state.principal = Principal.system()
            return await call_next(request)

        if self.authenticator is None:
            logger.error(f"AUTH_ERROR | Path: {path} | Reason: no_authenticator")
            return self._unauthorized_response(request, "Server authentication not configured")

        principal = await self.authenticator(request)
        if principal is None:
            return self._unauthorized_response(request, "Unauthorized")

        request.state.principal = principal
        return await call_next(request)

    def _unauthorized_response(self, request: Request, detail: str) -> JSONResponse:
        """Return 401 with a JSON-RPC envelope and a WWW-Authenticate header."""
        return JSONResponse(
            status_code=AuthorizationError.http_status,
            content=error_envelope(None, AuthorizationError(detail)),
            headers={"WWW-Authenticate": 'Basic realm="mcp", Bearer realm="mcp"'},
        )
