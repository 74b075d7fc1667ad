"""Per-session adapter around the MCP SDK streamable HTTP transport."""

import logging

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Receive, Scope, Send

logger = logging.getLogger("postgres-mcp.transport")


class StreamableSessionTransport:
    """One MCP session: an SDK transport plus the server loop reading from it."""

    def __init__(self, session_id: str, server: Server, json_response: bool = False) -> None:
        self.session_id = session_id
        self._server = server
        self._http_transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._closed = anyio.Event()
        self._terminating = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def start(self, task_group: TaskGroup) -> None:
        await task_group.start(self._run)

    async def _run(self, *, task_status: TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with self._http_transport.connect() as (read_stream, write_stream):
                task_status.started()
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        except Exception:
            logger.exception(f"Session {self.session_id} crashed")
        finally:
            self._closed.set()
            logger.debug(f"Session loop finished: {self.session_id}")

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._http_transport.handle_request(scope, receive, send)

    async def close(self) -> None:
        if self._terminating or self.closed:
            return
        self._terminating = True
        await self._http_transport.terminate()

    async def wait_closed(self) -> None:
        await self._closed.wait()
