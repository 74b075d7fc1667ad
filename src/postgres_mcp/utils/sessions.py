"""Registry of live MCP sessions keyed by ``mcp-session-id``.

Each session owns one transport. The registry creates a transport for a
valid ``initialize`` request, publishes its ID once the transport has
answered successfully, and drops the entry when the transport reports
that it has closed.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

import anyio
from anyio.abc import TaskGroup
from mcp import types
from pydantic import ValidationError
from starlette.types import Message, Receive, Scope, Send

from postgres_mcp.exceptions import SessionNotFoundError
from postgres_mcp.utils.audit import AuditAction, AuditLogger

logger = logging.getLogger("postgres-mcp.sessions")

NO_VALID_SESSION = "Bad Request: No valid session ID"


class SessionTransport(Protocol):
    """What the registry needs from a per-session transport."""

    session_id: str

    @property
    def closed(self) -> bool: ...

    async def start(self, task_group: TaskGroup) -> None:
        """Start the session loop inside ``task_group`` and return once ready."""

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None: ...

    async def close(self) -> None:
        """Terminate the session. Safe to call more than once."""

    async def wait_closed(self) -> None:
        """Return once the session loop has finished for any reason."""


TransportFactory = Callable[[str], SessionTransport]


def is_initialize_request(body: Any) -> bool:
    """Whether a parsed JSON body is a well-formed JSON-RPC ``initialize`` request."""
    if not isinstance(body, dict) or body.get("method") != "initialize":
        return False
    try:
        types.JSONRPCRequest.model_validate(body)
        types.InitializeRequest.model_validate(
            {"method": body["method"], "params": body.get("params")}
        )
    except ValidationError:
        return False
    return True


def _caller_ip(scope: Scope) -> str | None:
    client = scope.get("client")
    return client[0] if client else None


class SessionRegistry:
    """Owns every live session transport for one server process."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        audit: AuditLogger | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._audit = audit
        self._sessions: dict[str, SessionTransport] = {}
        self._task_group: TaskGroup | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> SessionTransport | None:
        return self._sessions.get(session_id)

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        """Own the task group that session loops run in.

        On exit every remaining session is closed.
        """
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry is already running")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.debug("Session registry started")
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    await self.shutdown_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.debug("Session registry stopped")

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError("SessionRegistry.run() has not been entered")
        return self._task_group

    async def handle_inbound(
        self,
        session_id: str | None,
        body: Any,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        """Route one HTTP request to its session, creating one for ``initialize``.

        Args:
            session_id: Value of the ``mcp-session-id`` header, if any
            body: Parsed JSON body, or None for bodiless requests
            scope: ASGI scope of the request
            receive: ASGI receive callable replaying the request body
            send: ASGI send callable

        Raises:
            SessionNotFoundError: If the ID is unknown, or no ID was sent and
                the body is not an initialize request.
        """
        if session_id:
            transport = self._sessions.get(session_id)
            if transport is None:
                logger.debug(f"Request for unknown session: {session_id}")
                raise SessionNotFoundError(NO_VALID_SESSION)
            await transport.handle_request(scope, receive, send)
            return

        if not is_initialize_request(body):
            raise SessionNotFoundError(NO_VALID_SESSION)

        await self._create_session(scope, receive, send)

    async def _create_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        tg = self._require_task_group()
        transport = self._transport_factory(uuid.uuid4().hex)
        await transport.start(tg)

        registered = False

        async def send_and_register(message: Message) -> None:
            nonlocal registered
            if (
                not registered
                and message["type"] == "http.response.start"
                and message["status"] < 400
                and not transport.closed
            ):
                self._register(transport, tg, _caller_ip(scope))
                registered = True
            await send(message)

        try:
            await transport.handle_request(scope, receive, send_and_register)
        finally:
            if not registered:
                logger.debug(f"Initialization failed, discarding session {transport.session_id}")
                with anyio.CancelScope(shield=True):
                    await transport.close()

    def _register(
        self, transport: SessionTransport, tg: TaskGroup, caller_ip: str | None
    ) -> None:
        session_id = transport.session_id
        self._sessions[session_id] = transport
        tg.start_soon(self._remove_when_closed, transport)
        logger.info(f"Session initialized: {session_id}")
        if self._audit:
            self._audit.log(
                AuditAction.SESSION_CREATED, user_ip=caller_ip, session_id=session_id
            )

    async def _remove_when_closed(self, transport: SessionTransport) -> None:
        await transport.wait_closed()
        session_id = transport.session_id
        if self._sessions.get(session_id) is transport:
            del self._sessions[session_id]
            logger.info(f"Session closed by transport: {session_id}")
            if self._audit:
                self._audit.log(
                    AuditAction.SESSION_TERMINATED,
                    session_id=session_id,
                    metadata={"reason": "transport_closed"},
                )

    async def close_session(self, session_id: str | None) -> None:
        """Explicitly terminate a session.

        The entry is removed before the transport is closed, so the ID is
        unroutable from this point on.

        Raises:
            SessionNotFoundError: If the ID is missing or unknown.
        """
        transport = self._sessions.pop(session_id, None) if session_id else None
        if transport is None:
            raise SessionNotFoundError(NO_VALID_SESSION)

        await transport.close()
        logger.info(f"Session terminated: {session_id}")
        if self._audit:
            self._audit.log(
                AuditAction.SESSION_TERMINATED,
                session_id=session_id,
                metadata={"reason": "client_request"},
            )

    async def shutdown_all(self) -> None:
        """Close every session, logging and skipping individual failures."""
        sessions = list(self._sessions.items())
        if sessions:
            logger.info(f"Closing {len(sessions)} active session(s)")
        for session_id, transport in sessions:
            try:
                await transport.close()
            except Exception:
                logger.exception(f"Error closing session {session_id}")
        self._sessions.clear()
