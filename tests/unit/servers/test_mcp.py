"""Unit tests for the /mcp endpoint and bearer authentication."""

import urllib.parse

import anyio
import pytest
from fastmcp import FastMCP
from starlette.testclient import TestClient

from postgres_mcp.config import ServerConfig
from postgres_mcp.servers.main import create_app
from postgres_mcp.servers.transport import StreamableSessionTransport
from postgres_mcp.utils.audit import AuditLogger

INITIALIZE_REQUEST = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0"},
    },
}
TOOLS_LIST = {"jsonrpc": "2.0", "id": 2, "method": "tools/list"}
NO_VALID_SESSION = {
    "jsonrpc": "2.0",
    "error": {"code": -32000, "message": "Bad Request: No valid session ID"},
    "id": None,
}
MCP_HEADERS = {"accept": "application/json, text/event-stream"}


def make_client(clock, transport_factory, **config_overrides):
    app = create_app(
        ServerConfig(external_base_url="https://mcp.example.com", **config_overrides),
        transport_factory=transport_factory,
        audit=AuditLogger(enabled=False),
        clock=clock,
    )
    return TestClient(app)


@pytest.fixture
def client(clock, transport_factory):
    with make_client(clock, transport_factory) as client:
        yield client


@pytest.fixture
def oauth_client(clock, transport_factory):
    with make_client(clock, transport_factory, oauth_enabled=True) as client:
        yield client


class TestMcpEndpoint:
    """Session routing through POST, GET and DELETE /mcp."""

    def test_post_without_session_non_initialize(self, client, transport_factory):
        response = client.post("/mcp", json=TOOLS_LIST, headers=MCP_HEADERS)

        assert response.status_code == 400
        assert response.json() == NO_VALID_SESSION
        assert transport_factory.created == []

    def test_post_invalid_json_without_session(self, client):
        response = client.post(
            "/mcp",
            content=b"{broken",
            headers={**MCP_HEADERS, "content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == NO_VALID_SESSION

    def test_initialize_creates_session(self, client, transport_factory):
        response = client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)

        assert response.status_code == 200
        session_id = response.headers["mcp-session-id"]
        assert session_id == transport_factory.created[0].session_id
        assert session_id in client.app.state.sessions

    def test_session_header_routes_to_same_transport(self, client, transport_factory):
        session_id = client.post(
            "/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS
        ).headers["mcp-session-id"]

        response = client.post(
            "/mcp", json=TOOLS_LIST, headers={**MCP_HEADERS, "mcp-session-id": session_id}
        )

        assert response.status_code == 200
        assert len(transport_factory.created) == 1
        assert len(transport_factory.created[0].requests) == 2

    def test_unknown_session_id(self, client):
        response = client.post(
            "/mcp", json=TOOLS_LIST, headers={**MCP_HEADERS, "mcp-session-id": "unknown"}
        )
        assert response.status_code == 400
        assert response.json() == NO_VALID_SESSION

    def test_get_requires_session(self, client):
        assert client.get("/mcp").status_code == 400
        assert client.get("/mcp", headers={"mcp-session-id": "unknown"}).status_code == 400

    def test_get_routes_to_session(self, client, transport_factory):
        session_id = client.post(
            "/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS
        ).headers["mcp-session-id"]

        response = client.get("/mcp", headers={"mcp-session-id": session_id})

        assert response.status_code == 200
        assert transport_factory.created[0].requests[-1]["method"] == "GET"

    def test_delete_terminates_session(self, client, transport_factory):
        session_id = client.post(
            "/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS
        ).headers["mcp-session-id"]

        response = client.delete("/mcp", headers={"mcp-session-id": session_id})

        assert response.status_code == 200
        assert transport_factory.created[0].closed is True
        assert session_id not in client.app.state.sessions

        # The ID is never routable again
        again = client.post(
            "/mcp", json=TOOLS_LIST, headers={**MCP_HEADERS, "mcp-session-id": session_id}
        )
        assert again.status_code == 400
        assert client.delete("/mcp", headers={"mcp-session-id": session_id}).status_code == 400

    def test_delete_requires_session(self, client):
        response = client.delete("/mcp")
        assert response.status_code == 400
        assert response.json() == NO_VALID_SESSION

    def test_failed_initialize_not_registered(self, clock, rejecting_transport_factory):
        with make_client(clock, rejecting_transport_factory) as client:
            response = client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)
            assert response.status_code == 400
            assert len(client.app.state.sessions) == 0

    def test_unexpected_error_is_jsonrpc_internal_error(self, client, transport_factory):
        session_id = client.post(
            "/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS
        ).headers["mcp-session-id"]

        async def explode(scope, receive, send):
            raise RuntimeError("boom")

        transport_factory.created[0].handle_request = explode
        response = client.post(
            "/mcp", json=TOOLS_LIST, headers={**MCP_HEADERS, "mcp-session-id": session_id}
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == -32603

    def test_shutdown_closes_sessions(self, clock, transport_factory):
        with make_client(clock, transport_factory) as client:
            for _ in range(2):
                client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)
        assert all(t.closed for t in transport_factory.created)


class TestBearerAuth:
    """Bearer middleware on /mcp when OAuth is enabled."""

    def test_no_auth_required_when_oauth_disabled(self, client):
        response = client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)
        assert response.status_code == 200

    def test_missing_authorization_header(self, oauth_client):
        response = oauth_client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_request"
        assert response.headers["www-authenticate"] == (
            'Bearer error="invalid_request", '
            'resource_metadata="https://mcp.example.com/.well-known/oauth-protected-resource"'
        )

    def test_non_bearer_scheme(self, oauth_client):
        response = oauth_client.post(
            "/mcp",
            json=INITIALIZE_REQUEST,
            headers={**MCP_HEADERS, "authorization": "Basic dXNlcjpwYXNz"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_request"

    def test_empty_token(self, oauth_client):
        response = oauth_client.post(
            "/mcp",
            json=INITIALIZE_REQUEST,
            headers={**MCP_HEADERS, "authorization": "Bearer "},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"

    def test_any_non_empty_token_accepted_by_default(self, oauth_client):
        response = oauth_client.post(
            "/mcp",
            json=INITIALIZE_REQUEST,
            headers={**MCP_HEADERS, "authorization": "Bearer opaque-value"},
        )
        assert response.status_code == 200

    def test_verify_tokens_rejects_unknown(self, clock, transport_factory):
        with make_client(
            clock, transport_factory, oauth_enabled=True, verify_tokens=True
        ) as client:
            response = client.post(
                "/mcp",
                json=INITIALIZE_REQUEST,
                headers={**MCP_HEADERS, "authorization": "Bearer made-up"},
            )
            assert response.status_code == 401
            assert response.json()["error"] == "invalid_token"

            token = client.post(
                "/oauth/token",
                data={"grant_type": "client_credentials", "client_id": "machine-1"},
            ).json()["access_token"]
            response = client.post(
                "/mcp",
                json=INITIALIZE_REQUEST,
                headers={**MCP_HEADERS, "authorization": f"Bearer {token}"},
            )
            assert response.status_code == 200

    def test_verify_tokens_rejects_expired(self, clock, transport_factory):
        with make_client(
            clock,
            transport_factory,
            oauth_enabled=True,
            verify_tokens=True,
            token_expires_in=60,
        ) as client:
            token = client.post(
                "/oauth/token",
                data={"grant_type": "client_credentials", "client_id": "machine-1"},
            ).json()["access_token"]
            clock.advance(60)
            response = client.post(
                "/mcp",
                json=INITIALIZE_REQUEST,
                headers={**MCP_HEADERS, "authorization": f"Bearer {token}"},
            )
            assert response.status_code == 401

    def test_discovery_is_public(self, oauth_client):
        assert oauth_client.get("/.well-known/oauth-protected-resource").status_code == 200
        assert oauth_client.get("/mcp/.well-known/oauth-authorization-server").status_code == 200


class TestHealthAndCors:
    """Ambient routes."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "server": "postgres-mcp",
            "version": "2.1.0",
        }

    def test_oauth_routes_absent_when_disabled(self, client):
        assert client.get("/.well-known/oauth-authorization-server").status_code == 404
        assert client.post("/oauth/register", json={"redirect_uris": ["x"]}).status_code == 404

    def test_cors_preflight(self, client):
        response = client.options(
            "/mcp",
            headers={
                "origin": "https://inspector.example",
                "access-control-request-method": "POST",
                "access-control-request-headers": "mcp-session-id, authorization",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "DELETE" in response.headers["access-control-allow-methods"]

    def test_cors_exposes_session_header(self, client):
        response = client.post(
            "/mcp",
            json=INITIALIZE_REQUEST,
            headers={**MCP_HEADERS, "origin": "https://inspector.example"},
        )
        assert response.headers["access-control-allow-origin"] == "*"
        assert "mcp-session-id" in response.headers["access-control-expose-headers"].lower()


class TestEndToEnd:
    """Register, authorize, exchange and open a session."""

    def test_register_authorize_token_session(self, oauth_client):
        client_id = oauth_client.post(
            "/oauth/register", json={"redirect_uris": ["https://cb"]}
        ).json()["client_id"]

        redirect = oauth_client.get(
            "/oauth/authorize",
            params={"client_id": client_id, "redirect_uri": "https://cb", "state": "st"},
            follow_redirects=False,
        )
        assert redirect.status_code == 302
        params = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(redirect.headers["location"]).query))
        assert params["state"] == "st"

        token_response = oauth_client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "code": params["code"], "client_id": client_id},
        )
        assert token_response.status_code == 200
        token = token_response.json()["access_token"]

        replay = oauth_client.post(
            "/oauth/token", data={"grant_type": "authorization_code", "code": params["code"]}
        )
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

        auth = {**MCP_HEADERS, "authorization": f"Bearer {token}"}
        init = oauth_client.post("/mcp", json=INITIALIZE_REQUEST, headers=auth)
        assert init.status_code == 200
        session_id = init.headers["mcp-session-id"]

        closed = oauth_client.delete("/mcp", headers={**auth, "mcp-session-id": session_id})
        assert closed.status_code == 200


class TestStreamableTransport:
    """Sessions backed by the MCP SDK transport and a FastMCP server."""

    def test_initialize_and_list_tools(self):
        mcp = FastMCP("postgres-mcp-test")

        @mcp.tool()
        def ping() -> str:
            """Return pong."""
            return "pong"

        app = create_app(
            ServerConfig(json_response=True),
            mcp_server=mcp,
            audit=AuditLogger(enabled=False),
        )
        with TestClient(app) as client:
            init = client.post("/mcp", json=INITIALIZE_REQUEST, headers=MCP_HEADERS)
            assert init.status_code == 200
            session_id = init.headers["mcp-session-id"]
            assert init.json()["result"]["serverInfo"]["name"] == "postgres-mcp-test"

            headers = {**MCP_HEADERS, "mcp-session-id": session_id}
            initialized = client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                headers=headers,
            )
            assert initialized.status_code == 202

            tools = client.post("/mcp", json=TOOLS_LIST, headers=headers)
            assert tools.status_code == 200
            assert [tool["name"] for tool in tools.json()["result"]["tools"]] == ["ping"]

            assert client.delete("/mcp", headers=headers).status_code == 200
            assert session_id not in app.state.sessions

    @pytest.mark.anyio
    async def test_server_run_called_with_positional_arguments_only(self, caplog):
        calls = []

        class LowLevelServer:
            def create_initialization_options(self):
                return "init-options"

            async def run(self, read_stream, write_stream, initialization_options):
                calls.append(initialization_options)

        transport = StreamableSessionTransport("abc123", LowLevelServer())
        async with anyio.create_task_group() as tg:
            await transport.start(tg)
            with anyio.fail_after(5):
                await transport.wait_closed()

        assert calls == ["init-options"]
        assert transport.closed
        assert "crashed" not in caplog.text
