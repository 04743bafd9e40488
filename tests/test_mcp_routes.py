"""End-to-end tests for the streamable HTTP /mcp endpoint."""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from modelmcp.main import create_app
from tests._helpers import make_settings

SESSION_HEADER = "mcp-session-id"


def _message(method, request_id=1, **params):
    payload = {"jsonrpc": "2.0", "method": method, "params": params}
    if request_id is not None:
        payload["id"] = request_id
    return payload


def _initialize(client, **headers):
    return client.post(
        "/mcp",
        json=_message("initialize", protocolVersion="2025-06-18", clientInfo={"name": "pytest"}),
        headers=headers,
    )


@pytest.fixture
def session_id(client):
    response = _initialize(client)
    assert response.status_code == 200
    return response.headers[SESSION_HEADER]


def _call(client, session_id, method, request_id=2, **params):
    return client.post("/mcp", json=_message(method, request_id, **params), headers={SESSION_HEADER: session_id})


class TestInitialize:
    def test_initialize_mints_session(self, client):
        """Happy path: initialize returns the result and a fresh session id."""
        response = _initialize(client)
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == 1
        assert body["result"]["protocolVersion"] == "2025-06-18"
        assert body["result"]["serverInfo"] == {"name": "modelmcp", "version": "1.0.0"}
        assert len(response.headers[SESSION_HEADER]) >= 32
        assert "X-Request-ID" in response.headers

    def test_client_chosen_session_id_is_refused(self, client):
        """Error condition: a session id the server never minted."""
        response = _initialize(client, **{SESSION_HEADER: "my-own-id"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32000
        assert SESSION_HEADER not in response.headers

    def test_reinitialize_existing_session(self, client, session_id):
        response = _initialize(client, **{SESSION_HEADER: session_id})
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": -32600,
            "message": "Invalid Request: Server already initialized",
        }

    def test_initialize_as_notification(self, client):
        response = client.post("/mcp", json=_message("initialize", None))
        assert response.status_code == 400

    def test_failed_handshake(self, client):
        response = client.post("/mcp", json=_message("initialize", protocolVersion=2025))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32602
        assert SESSION_HEADER not in response.headers

    def test_event_stream_reply(self, client):
        response = client.post(
            "/mcp",
            json=_message("initialize", protocolVersion="2025-06-18"),
            headers={"Accept": "text/event-stream"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert SESSION_HEADER in response.headers
        event, data = response.text.strip().split("\n", 1)
        assert event == "event: message"
        assert json.loads(data[len("data: "):])["result"]["protocolVersion"] == "2025-06-18"


class TestSessionRequests:
    def test_tools_list(self, client, session_id):
        response = _call(client, session_id, "tools/list")
        assert response.status_code == 200
        names = [tool["name"] for tool in response.json()["result"]["tools"]]
        assert names[0] == "CatalogService_Books_query"
        assert "describe_model" in names

    def test_tools_call(self, client, session_id):
        response = _call(client, session_id, "tools/call", name="get_stock", arguments={"id": 252})
        assert response.json()["result"] == {"content": [{"type": "text", "text": "555"}], "isError": False}

    def test_query_tool_call(self, client, session_id):
        response = _call(
            client,
            session_id,
            "tools/call",
            name="CatalogService_Books_query",
            arguments={"where": [{"field": "stock", "op": "gt", "value": 500}], "select": ["ID"]},
        )
        assert json.loads(response.json()["result"]["content"][0]["text"]) == [{"ID": 252}]

    def test_not_found_is_tool_result(self, client, session_id):
        response = _call(client, session_id, "tools/call", name="CatalogService_Books_get", arguments={"ID": 1})
        assert response.json()["result"]["isError"] is True

    def test_unknown_tool(self, client, session_id):
        response = _call(client, session_id, "tools/call", name="nope", arguments={})
        assert response.status_code == 200
        assert response.json()["error"]["code"] == -32602
        assert response.json()["error"]["message"] == "Tool nope not found"

    def test_invalid_tool_arguments(self, client, session_id):
        response = _call(client, session_id, "tools/call", name="CatalogService_Books_query", arguments={"top": 0})
        error = response.json()["error"]
        assert error["code"] == -32602
        assert error["data"]["field"] == "top"

    def test_backend_failure_is_internal_error(self, client, session_id, backend):
        async def broken(arguments):
            raise RuntimeError("db at /var/lib/secret.db exploded")

        backend.register_operation("CatalogService", "getStock", broken)
        response = _call(client, session_id, "tools/call", name="get_stock", arguments={"id": 1})
        error = response.json()["error"]
        assert error["code"] == -32603
        assert "/var/lib" not in error["message"]

    def test_resources(self, client, session_id):
        listed = _call(client, session_id, "resources/list").json()["result"]["resources"]
        assert [r["uri"] for r in listed] == ["odata://CatalogService/genres"]
        templates = _call(client, session_id, "resources/templates/list").json()["result"]["resourceTemplates"]
        assert [t["name"] for t in templates] == ["books", "authors", "orders"]

        uri = "odata://CatalogService/books?top=1&orderby=ID&select=ID,title"
        contents = _call(client, session_id, "resources/read", uri=uri).json()["result"]["contents"]
        assert json.loads(contents[0]["text"]) == [{"ID": 201, "title": "Wuthering Heights"}]

    def test_unknown_resource(self, client, session_id):
        response = _call(client, session_id, "resources/read", uri="odata://CatalogService/nothing")
        assert response.json()["error"]["code"] == -32602

    def test_prompts(self, client, session_id):
        listed = _call(client, session_id, "prompts/list").json()["result"]["prompts"]
        assert [p["name"] for p in listed] == ["summarize_book"]
        rendered = _call(
            client, session_id, "prompts/get", name="summarize_book", arguments={"title": "Eleonora", "words": 20}
        ).json()["result"]
        assert rendered["messages"][0]["content"]["text"] == "Summarize Eleonora in 20 words."

    def test_ping(self, client, session_id):
        assert _call(client, session_id, "ping").json() == {"jsonrpc": "2.0", "id": 2, "result": {}}

    def test_unknown_method(self, client, session_id):
        response = _call(client, session_id, "sampling/createMessage")
        assert response.json()["error"]["code"] == -32601

    def test_notification_is_accepted(self, client, session_id):
        response = _call(client, session_id, "notifications/initialized", None)
        assert response.status_code == 202
        assert response.content == b""

    def test_client_response_is_accepted(self, client, session_id):
        response = client.post(
            "/mcp", json={"jsonrpc": "2.0", "id": 9, "result": {}}, headers={SESSION_HEADER: session_id}
        )
        assert response.status_code == 202


class TestSessionErrors:
    @pytest.mark.parametrize("headers", [{}, {SESSION_HEADER: "unknown"}])
    def test_missing_or_unknown_session(self, client, headers):
        response = client.post("/mcp", json=_message("tools/list", 3), headers=headers)
        assert response.status_code == 400
        assert response.json() == {
            "jsonrpc": "2.0",
            "id": 3,
            "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
        }

    def test_get_stream_without_session(self, client):
        assert client.get("/mcp").status_code == 400

    def test_delete_terminates(self, client, session_id):
        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})
        assert response.status_code == 200
        assert _call(client, session_id, "tools/list").status_code == 400
        assert client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 400


class TestMalformedMessages:
    def test_parse_error(self, client):
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_batch_is_rejected(self, client):
        response = client.post("/mcp", json=[_message("ping", 1), _message("ping", 2)])
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": 4, "method": "ping"},
            {"jsonrpc": "1.0", "id": 4, "method": "ping"},
            {"jsonrpc": "2.0", "id": 4},
            {"jsonrpc": "2.0", "id": 4, "method": "ping", "result": {}},
        ],
    )
    def test_invalid_request(self, client, payload):
        response = client.post("/mcp", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600
        assert response.json()["id"] == 4


class TestAuthentication:
    @pytest.fixture
    def secured(self, sample_model, backend):
        settings = make_settings(
            MCP_AUTH="inherit",
            MCP_AUTH_USER="admin",
            MCP_AUTH_PASS="s3cret",
            MCP_AUTH_TOKENS="token-abcdef",
            MCP_AUTH_ROLES="viewer",
        )
        with TestClient(create_app(model=sample_model, backend=backend, settings=settings)) as client:
            yield client

    @staticmethod
    def _basic(user, password):
        return {"Authorization": "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()}

    def test_unauthenticated_gets_401_before_session_lookup(self, secured):
        response = secured.post("/mcp", json=_message("tools/list"), headers={SESSION_HEADER: "whatever"})
        assert response.status_code == 401
        assert response.json()["error"] == {"code": -32000, "message": "Unauthorized"}
        assert "WWW-Authenticate" in response.headers

    def test_wrong_password(self, secured):
        response = _initialize(secured, **self._basic("admin", "nope"))
        assert response.status_code == 401

    def test_basic_credentials(self, secured):
        headers = self._basic("admin", "s3cret")
        response = _initialize(secured, **headers)
        assert response.status_code == 200
        session_id = response.headers[SESSION_HEADER]

        tools = secured.post("/mcp", json=_message("tools/list", 2), headers={**headers, SESSION_HEADER: session_id})
        names = [tool["name"] for tool in tools.json()["result"]["tools"]]
        # viewer role grants READ on Orders
        assert "CatalogService_Orders_query" in names

    def test_session_bound_to_its_user(self, secured):
        response = _initialize(secured, **self._basic("admin", "s3cret"))
        session_id = response.headers[SESSION_HEADER]
        hijack = secured.post(
            "/mcp",
            json=_message("tools/list", 2),
            headers={"Authorization": "Bearer token-abcdef", SESSION_HEADER: session_id},
        )
        assert hijack.status_code == 400
        assert hijack.json()["error"]["code"] == -32000

    def test_bearer_token(self, secured):
        response = _initialize(secured, Authorization="Bearer token-abcdef")
        assert response.status_code == 200

    def test_token_session_not_shared_with_similar_token(self, sample_model, backend):
        settings = make_settings(MCP_AUTH="inherit", MCP_AUTH_TOKENS="service-token-one,service-token-two")
        with TestClient(create_app(model=sample_model, backend=backend, settings=settings)) as client:
            response = _initialize(client, Authorization="Bearer service-token-one")
            session_id = response.headers[SESSION_HEADER]
            other = client.post(
                "/mcp",
                json=_message("tools/list", 2),
                headers={"Authorization": "Bearer service-token-two", SESSION_HEADER: session_id},
            )
            assert other.status_code == 400
            assert other.json()["error"]["code"] == -32000

    def test_health_stays_public(self, secured):
        assert secured.get("/health").status_code == 200
        assert secured.get("/mcp/health").status_code == 200
