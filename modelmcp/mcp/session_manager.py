"""Session registry for the streamable HTTP transport.

Sessions move through three states::

    UNINITIALIZED --initialize ok--> ACTIVE --terminate / transport closed--> CLOSED

Only ACTIVE sessions are kept in the registry. Requests on one session are
not serialized: two concurrent calls on the same session run interleaved on
the event loop, exactly like calls on different sessions.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

from ..schemas.jsonrpc import JsonRpcMessage
from ..utils.auth import Principal
from ..utils.errors import McpError, SessionError, error_envelope
from .catalog import CatalogProvider, CapabilityCatalog
from .server import ProtocolServer

logger = logging.getLogger("modelmcp.sessions")

HEARTBEAT_INTERVAL = 30.0

CloseCallback = Callable[[str], Any]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionTransport:
    """The server-to-client side of one session.

    Notifications pushed with :meth:`send` are delivered to whoever holds
    the SSE stream opened by ``GET /mcp``. Closing the transport ends that
    stream and fires the registered close callbacks once.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.closed = False
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._close_callbacks: List[CloseCallback] = []

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise SessionError("Session transport is closed")
        await self._queue.put(message)

    async def stream(self, heartbeat_interval: float = HEARTBEAT_INTERVAL) -> AsyncIterator[str]:
        # messages queued before close are still delivered, the None sentinel ends the stream
        while True:
            try:
                message = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                if self.closed:
                    break
                yield ": heartbeat\n\n"
                continue
            if message is None:
                break
            yield f"event: message\ndata: {json.dumps(message)}\n\n"

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            outcome = callback(self.session_id)
            if inspect.isawaitable(outcome):
                await outcome


@dataclass
class Session:
    id: str
    catalog: CapabilityCatalog
    transport: SessionTransport
    server: ProtocolServer
    principal: Principal
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.UNINITIALIZED

    async def handle(self, message: JsonRpcMessage) -> Optional[Dict[str, Any]]:
        if self.state is SessionState.CLOSED:
            raise SessionError()
        return await self.server.handle(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "user": self.principal.user,
            "created_at": self.created_at.isoformat(),
            "protocol_version": self.server.protocol_version,
        }


class SessionManager:
    """Owns the id → session registry.

    All mutation happens on the event loop between awaits, so lookups never
    observe a half-registered session.
    """

    def __init__(
        self,
        catalog_provider: CatalogProvider,
        server_info: Mapping[str, str],
        *,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self.catalog_provider = catalog_provider
        self.server_info = dict(server_info)
        self._id_factory = id_factory
        self._sessions: Dict[str, Session] = {}

    @property
    def sessions(self) -> Mapping[str, Session]:
        return MappingProxyType(self._sessions)

    def has_session(self, session_id: Optional[str]) -> bool:
        return session_id is not None and session_id in self._sessions

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def _mint_id(self) -> str:
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()
        return session_id

    async def create_session(
        self,
        initialize: JsonRpcMessage,
        principal: Principal,
    ) -> Tuple[Optional[Session], Dict[str, Any]]:
        """Run the initialize handshake on a fresh session.

        Returns the registered session (None if the handshake failed) and
        the initialize response.
        """
        try:
            catalog = await self.catalog_provider.get()
        except McpError as exc:
            logger.error(f"Cannot open session, catalog unavailable: {exc.message}")
            return None, error_envelope(initialize.id, exc)
        session_id = self._mint_id()
        transport = SessionTransport(session_id)
        session = Session(
            id=session_id,
            catalog=catalog,
            transport=transport,
            server=ProtocolServer(catalog, server_info=self.server_info, principal=principal),
            principal=principal,
        )

        response = await session.handle(initialize) or {}
        if "error" in response:
            session.state = SessionState.CLOSED
            await transport.close()
            return None, response

        # the id may have been taken while the handshake was awaited
        if session_id in self._sessions:
            session_id = self._mint_id()
            session.id = session_id
            transport.session_id = session_id
        transport.on_close(self._on_transport_closed)
        session.state = SessionState.ACTIVE
        self._sessions[session_id] = session
        logger.info(f"Session {session_id[:8]}... created for {principal.user} ({len(self._sessions)} active)")
        return session, response

    def _on_transport_closed(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.state = SessionState.CLOSED
            logger.info(f"Session {session_id[:8]}... closed ({len(self._sessions)} active)")

    async def terminate_session(self, session_id: str) -> bool:
        """Close a session. The entry is always removed; False means the close failed."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            await session.transport.close()
            return True
        except Exception as exc:
            logger.error(f"Error closing session {session_id[:8]}...: {exc}")
            return False
        finally:
            self._sessions.pop(session_id, None)
            session.state = SessionState.CLOSED

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.terminate_session(session_id)
