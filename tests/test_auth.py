import base64
import hashlib

import pytest
from starlette.requests import Request

from modelmcp.utils.auth import ANONYMOUS, BasicAuthenticator, Principal
from tests._helpers import make_settings


def _request(authorization=None):
    headers = [(b"authorization", authorization.encode())] if authorization else []
    scope = {"type": "http", "method": "POST", "path": "/mcp", "query_string": b"", "headers": headers, "client": ("127.0.0.1", 1)}
    return Request(scope)


@pytest.fixture
def authenticator():
    return BasicAuthenticator(
        make_settings(
            MCP_AUTH="inherit",
            MCP_AUTH_USER="admin",
            MCP_AUTH_PASS="pw",
            MCP_AUTH_TOKENS="t1,t2",
            MCP_AUTH_ROLES="viewer,editor",
        )
    )


class TestBasicAuthenticator:
    @pytest.mark.asyncio
    async def test_basic(self, authenticator):
        header = "Basic " + base64.b64encode(b"admin:pw").decode()
        principal = await authenticator(_request(header))
        assert principal == Principal(user="admin", roles=frozenset({"viewer", "editor"}))

    @pytest.mark.asyncio
    async def test_bearer(self, authenticator):
        principal = await authenticator(_request("Bearer t2"))
        assert principal.user == "token:" + hashlib.sha256(b"t2").hexdigest()[:12]

    @pytest.mark.asyncio
    async def test_tokens_sharing_a_prefix_are_distinct_users(self):
        authenticator = BasicAuthenticator(
            make_settings(MCP_AUTH="inherit", MCP_AUTH_TOKENS="service-token-one,service-token-two")
        )
        one = await authenticator(_request("Bearer service-token-one"))
        two = await authenticator(_request("Bearer service-token-two"))
        assert one.user != two.user

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        [
            None,
            "Bearer nope",
            "Basic " + base64.b64encode(b"admin:wrong").decode(),
            "Basic !!!not-base64",
            "Digest abc",
        ],
    )
    async def test_rejects(self, authenticator, header):
        assert await authenticator(_request(header)) is None

    @pytest.mark.asyncio
    async def test_basic_without_configured_user(self):
        authenticator = BasicAuthenticator(make_settings(MCP_AUTH="inherit"))
        header = "Basic " + base64.b64encode(b"admin:pw").decode()
        assert await authenticator(_request(header)) is None


class TestPrincipal:
    def test_effective_roles(self):
        assert Principal(user="alice", roles=frozenset({"viewer"})).effective_roles == {
            "viewer",
            "authenticated-user",
        }
        assert ANONYMOUS.effective_roles == frozenset()

    def test_system(self):
        system = Principal.system()
        assert system.privileged
        assert system.has_role("anything")
