"""Tests for the session registry and the per-session transport."""

import asyncio
import itertools

import pytest

from modelmcp.mcp.catalog import CapabilityCatalog, CatalogProvider
from modelmcp.mcp.session_manager import SessionManager, SessionState, SessionTransport
from modelmcp.schemas.jsonrpc import JsonRpcMessage
from modelmcp.utils.auth import Principal
from modelmcp.utils.errors import SessionError

SERVER_INFO = {"name": "modelmcp", "version": "1.0.0"}
ALICE = Principal(user="alice")


def _initialize(request_id=1, **params):
    return JsonRpcMessage.model_validate(
        {"jsonrpc": "2.0", "id": request_id, "method": "initialize", "params": params}
    )


def _request(method, request_id=2, **params):
    return JsonRpcMessage.model_validate({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})


@pytest.fixture
def manager(catalog):
    return SessionManager(CatalogProvider.of(catalog), SERVER_INFO)


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_initialize_registers_active_session(self, manager):
        """Happy path: a successful handshake registers the session."""
        session, response = await manager.create_session(_initialize(protocolVersion="2025-03-26"), ALICE)
        assert session.state is SessionState.ACTIVE
        assert manager.get_session(session.id) is session
        assert response["result"]["protocolVersion"] == "2025-03-26"
        assert response["result"]["serverInfo"] == SERVER_INFO
        assert set(response["result"]["capabilities"]) == {"tools", "resources", "prompts"}

    @pytest.mark.asyncio
    async def test_unknown_protocol_version_falls_back(self, manager):
        session, response = await manager.create_session(_initialize(protocolVersion="1999-01-01"), ALICE)
        assert response["result"]["protocolVersion"] == "2025-06-18"
        assert session.to_dict()["protocol_version"] == "2025-06-18"

    @pytest.mark.asyncio
    async def test_failed_handshake_registers_nothing(self, manager):
        """Error condition: an initialize error leaves no session behind."""
        session, response = await manager.create_session(_initialize(protocolVersion=7), ALICE)
        assert session is None
        assert response["error"]["code"] == -32602
        assert not manager.sessions

    @pytest.mark.asyncio
    async def test_concurrent_initialize_yields_distinct_ids(self, manager):
        results = await asyncio.gather(*(manager.create_session(_initialize(i), ALICE) for i in range(20)))
        ids = {session.id for session, _ in results}
        assert len(ids) == 20
        assert set(manager.sessions) == ids

    @pytest.mark.asyncio
    async def test_id_clash_is_reminted(self, catalog):
        counter = itertools.count()
        ids = iter(["same", "same", "other"])
        manager = SessionManager(CatalogProvider.of(catalog), SERVER_INFO, id_factory=lambda: next(ids, f"x{next(counter)}"))
        first, _ = await manager.create_session(_initialize(1), ALICE)
        second, _ = await manager.create_session(_initialize(2), ALICE)
        assert first.id == "same"
        assert second.id == "other"

    @pytest.mark.asyncio
    async def test_catalog_is_built_on_first_initialize(self):
        builds = []

        async def factory():
            builds.append(1)
            return CapabilityCatalog.empty()

        manager = SessionManager(CatalogProvider(factory), SERVER_INFO)
        await manager.create_session(_initialize(1), ALICE)
        await manager.create_session(_initialize(2), ALICE)
        assert builds == [1]


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_requests_reach_the_session_server(self, manager):
        session, _ = await manager.create_session(_initialize(), ALICE)
        response = await session.handle(_request("tools/list"))
        names = [tool["name"] for tool in response["result"]["tools"]]
        # alice holds no viewer role
        assert "CatalogService_Orders_query" not in names
        assert "get_stock" in names

    @pytest.mark.asyncio
    async def test_second_initialize_on_session_is_rejected(self, manager):
        session, _ = await manager.create_session(_initialize(), ALICE)
        response = await session.handle(_initialize(5))
        assert response["error"] == {"code": -32600, "message": "Invalid Request: Server already initialized"}

    @pytest.mark.asyncio
    async def test_transport_close_removes_session(self, manager):
        session, _ = await manager.create_session(_initialize(), ALICE)
        await session.transport.close()
        assert not manager.has_session(session.id)
        assert session.state is SessionState.CLOSED
        with pytest.raises(SessionError):
            await session.handle(_request("ping"))

    @pytest.mark.asyncio
    async def test_terminate(self, manager):
        session, _ = await manager.create_session(_initialize(), ALICE)
        assert await manager.terminate_session(session.id) is True
        assert await manager.terminate_session(session.id) is False
        assert session.transport.closed

    @pytest.mark.asyncio
    async def test_terminate_removes_entry_even_when_close_fails(self, manager):
        session, _ = await manager.create_session(_initialize(), ALICE)

        def broken(session_id):
            raise RuntimeError("close hook failed")

        session.transport.on_close(broken)
        assert await manager.terminate_session(session.id) is False
        assert not manager.has_session(session.id)

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, manager):
        for i in range(3):
            await manager.create_session(_initialize(i), ALICE)
        await manager.shutdown()
        assert not manager.sessions

    @pytest.mark.asyncio
    async def test_calls_on_one_session_interleave(self, catalog, backend):
        """Two slow calls on the same session overlap instead of queueing."""
        running = []
        peak = []

        async def slow(arguments):
            running.append(1)
            peak.append(len(running))
            await asyncio.sleep(0.05)
            running.pop()
            return 0

        backend.register_operation("CatalogService", "getStock", slow)
        manager = SessionManager(CatalogProvider.of(catalog), SERVER_INFO)
        session, _ = await manager.create_session(_initialize(), ALICE)

        def call(request_id):
            return session.handle(_request("tools/call", request_id, name="get_stock", arguments={"id": 1}))

        responses = await asyncio.gather(call(10), call(11))
        assert [r["id"] for r in responses] == [10, 11]
        assert max(peak) == 2


class TestSessionTransport:
    @pytest.mark.asyncio
    async def test_stream_delivers_messages_then_ends(self):
        transport = SessionTransport("abc")
        await transport.send({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        await transport.close()
        events = [event async for event in transport.stream(heartbeat_interval=1)]
        assert events == [
            'event: message\ndata: {"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}\n\n'
        ]

    @pytest.mark.asyncio
    async def test_heartbeat(self):
        transport = SessionTransport("abc")
        stream = transport.stream(heartbeat_interval=0.01)
        assert await stream.__anext__() == ": heartbeat\n\n"
        await transport.close()
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        transport = SessionTransport("abc")
        await transport.close()
        with pytest.raises(SessionError):
            await transport.send({})

    @pytest.mark.asyncio
    async def test_close_callbacks_run_once(self):
        transport = SessionTransport("abc")
        seen = []

        async def on_close(session_id):
            seen.append(session_id)

        transport.on_close(on_close)
        await transport.close()
        await transport.close()
        assert seen == ["abc"]
