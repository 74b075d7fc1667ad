"""Starlette application wiring the OAuth surface and the ``/mcp`` endpoint."""

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from postgres_mcp.config import SERVER_NAME, SERVER_VERSION, ServerConfig
from postgres_mcp.utils.audit import AuditAction, AuditLogger
from postgres_mcp.utils.oauth_flow import AuthorizationFlow
from postgres_mcp.utils.sessions import SessionRegistry, TransportFactory

from .mcp import BearerAuthMiddleware, McpEndpoint
from .oauth_dcr import (
    authorize,
    oauth_metadata,
    protected_resource_metadata,
    register_client,
    token,
)
from .transport import StreamableSessionTransport

logger = logging.getLogger("postgres-mcp.server.main")

CORS_ALLOW_HEADERS = ["Content-Type", "Authorization", "Mcp-Session-Id", "Last-Event-Id"]
CORS_EXPOSE_HEADERS = ["Mcp-Session-Id"]


@dataclass
class AppState:
    """Everything one server process owns."""

    config: ServerConfig
    oauth_flow: AuthorizationFlow
    sessions: SessionRegistry
    audit: AuditLogger


def default_transport_factory(mcp_server: FastMCP, json_response: bool = False) -> TransportFactory:
    """Build transports that run ``mcp_server``'s low-level server per session."""

    def factory(session_id: str) -> StreamableSessionTransport:
        return StreamableSessionTransport(
            session_id, mcp_server._mcp_server, json_response=json_response
        )

    return factory


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "healthy", "server": SERVER_NAME, "version": SERVER_VERSION})


def build_state(
    config: ServerConfig,
    transport_factory: TransportFactory,
    audit: AuditLogger | None = None,
    clock: Callable[[], float] = time.time,
) -> AppState:
    if audit is None:
        audit = AuditLogger.from_env()
    return AppState(
        config=config,
        oauth_flow=AuthorizationFlow.from_config(config, clock=clock),
        sessions=SessionRegistry(transport_factory, audit=audit),
        audit=audit,
    )


def create_app(
    config: ServerConfig | None = None,
    mcp_server: FastMCP | None = None,
    transport_factory: TransportFactory | None = None,
    audit: AuditLogger | None = None,
    clock: Callable[[], float] = time.time,
) -> Starlette:
    """Create the HTTP application.

    Args:
        config: Server settings, read from the environment when omitted
        mcp_server: Tool server whose low-level server backs each session
        transport_factory: Overrides how per-session transports are built
        audit: Audit logger, read from the environment when omitted
        clock: Time source for codes, tokens and rate limiting

    Returns:
        Starlette application; its lifespan owns the session registry
    """
    config = config or ServerConfig.from_env()
    if transport_factory is None:
        if mcp_server is None:
            mcp_server = FastMCP(SERVER_NAME)
        transport_factory = default_transport_factory(mcp_server, config.json_response)

    state = build_state(config, transport_factory, audit=audit, clock=clock)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        state.audit.log(
            AuditAction.SERVER_STARTED,
            metadata={"oauth_enabled": config.oauth_enabled},
        )
        logger.info(f"{SERVER_NAME} listening, OAuth {'enabled' if config.oauth_enabled else 'disabled'}")
        try:
            async with state.sessions.run():
                yield
        finally:
            state.audit.log(AuditAction.SERVER_STOPPED)
            state.audit.close()
            logger.info(f"{SERVER_NAME} stopped")

    mcp_app = McpEndpoint(state.sessions)
    routes = [Route("/health", health_check, methods=["GET"])]

    if config.oauth_enabled:
        resource_metadata_url = f"{config.base_url}/.well-known/oauth-protected-resource"
        mcp_app = BearerAuthMiddleware(
            mcp_app,
            token_issuer=state.oauth_flow.tokens,
            verify_tokens=config.verify_tokens,
            resource_metadata_url=resource_metadata_url,
        )
        routes += [
            Route("/.well-known/oauth-protected-resource", protected_resource_metadata, methods=["GET"]),
            Route("/.well-known/oauth-protected-resource/mcp", protected_resource_metadata, methods=["GET"]),
            Route("/.well-known/oauth-authorization-server", oauth_metadata, methods=["GET"]),
            Route("/mcp/.well-known/oauth-authorization-server", oauth_metadata, methods=["GET"]),
            Route("/oauth/register", register_client, methods=["POST"]),
            Route("/register", register_client, methods=["POST"]),
            Route("/oauth/authorize", authorize, methods=["GET", "POST"]),
            Route("/oauth/token", token, methods=["POST"]),
        ]
        if not config.password_required:
            logger.warning(
                "MCP_AUTH_PASSWORD is not set: /oauth/authorize approves every request"
            )

    routes.append(Route("/mcp", mcp_app, methods=["GET", "POST", "DELETE"]))

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=CORS_ALLOW_HEADERS,
            expose_headers=CORS_EXPOSE_HEADERS,
        )
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.config = state.config
    app.state.oauth_flow = state.oauth_flow
    app.state.sessions = state.sessions
    app.state.audit = state.audit
    return app
