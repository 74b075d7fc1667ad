"""ASGI handlers for the ``/mcp`` endpoint."""

import json
import logging
from typing import Any

from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from postgres_mcp.exceptions import (
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    SessionNotFoundError,
)
from postgres_mcp.utils.logging import mask_sensitive
from postgres_mcp.utils.sessions import NO_VALID_SESSION, SessionRegistry
from postgres_mcp.utils.tokens import TokenIssuer

logger = logging.getLogger("postgres-mcp.server.mcp")

MCP_SESSION_ID_HEADER = "mcp-session-id"

JSONRPC_INVALID_SESSION = -32000
JSONRPC_INTERNAL_ERROR = -32603


def _header(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def jsonrpc_error(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


class McpEndpoint:
    """Routes POST, GET and DELETE on ``/mcp`` through the session registry."""

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = scope["method"]
        session_id = _header(scope, MCP_SESSION_ID_HEADER.encode())

        # Read the whole body once and replay it for the transport
        cached_messages: list[Message] = []
        body: Any = None
        if method == "POST":
            chunks = []
            while True:
                message = await receive()
                cached_messages.append(message)
                if message["type"] != "http.request":
                    break
                chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    break
            try:
                body = json.loads(b"".join(chunks) or b"null")
            except (json.JSONDecodeError, UnicodeDecodeError):
                body = None

        message_index = 0

        async def cached_receive() -> Message:
            nonlocal message_index
            if message_index < len(cached_messages):
                message = cached_messages[message_index]
                message_index += 1
                return message
            return await receive()

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            if method == "DELETE":
                await self.registry.close_session(session_id)
                response: Response = Response(status_code=200)
                await response(scope, cached_receive, tracking_send)
            else:
                await self.registry.handle_inbound(
                    session_id, body, scope, cached_receive, tracking_send
                )
        except SessionNotFoundError as e:
            logger.debug(f"{method} /mcp rejected: {e}")
            if not response_started:
                response = jsonrpc_error(JSONRPC_INVALID_SESSION, NO_VALID_SESSION, 400)
                await response(scope, cached_receive, send)
        except Exception:
            logger.exception(f"Error handling {method} /mcp request")
            if not response_started:
                response = jsonrpc_error(JSONRPC_INTERNAL_ERROR, "Internal server error", 500)
                await response(scope, cached_receive, send)


class BearerAuthMiddleware:
    """ASGI middleware requiring ``Authorization: Bearer <token>``.

    The token is accepted when non-empty. With ``verify_tokens`` it must
    also be one this process issued and that has not expired.
    """

    def __init__(
        self,
        app: ASGIApp,
        token_issuer: TokenIssuer | None = None,
        verify_tokens: bool = False,
        resource_metadata_url: str | None = None,
    ) -> None:
        self.app = app
        self.token_issuer = token_issuer
        self.verify_tokens = verify_tokens
        self.resource_metadata_url = resource_metadata_url
        if verify_tokens and token_issuer is None:
            raise ValueError("verify_tokens requires a token_issuer")

    def _check(self, authorization: str | None) -> None:
        if not authorization:
            raise InvalidRequestError("Missing Authorization header")

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            raise InvalidRequestError("Authorization header must use the Bearer scheme")

        token = token.strip()
        if not token:
            raise InvalidTokenError("Empty bearer token")

        if self.verify_tokens and not self.token_issuer.is_valid(token):
            logger.warning(f"Rejected unknown or expired bearer token {mask_sensitive(token)}")
            raise InvalidTokenError("Unknown or expired bearer token")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            self._check(_header(scope, b"authorization"))
        except OAuthError as e:
            logger.debug(f"Bearer authentication failed for {scope.get('path')}: {e.error}")
            await self._send_error_response(send, e)
            return

        await self.app(scope, receive, send)

    async def _send_error_response(self, send: Send, error: OAuthError) -> None:
        """Send a 401 with a ``WWW-Authenticate`` challenge following ASGI protocol."""
        response_body = json.dumps(error.to_dict()).encode()

        challenge = f'Bearer error="{error.error}"'
        if self.resource_metadata_url:
            challenge += f', resource_metadata="{self.resource_metadata_url}"'

        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": 401,
                    "headers": [
                        [b"content-type", b"application/json"],
                        [b"content-length", str(len(response_body)).encode()],
                        [b"www-authenticate", challenge.encode("latin-1")],
                    ],
                }
            )
            await send({"type": "http.response.body", "body": response_body})
        except OSError as e:
            logger.debug(f"Client disconnected during error response: {type(e).__name__}: {e}")
