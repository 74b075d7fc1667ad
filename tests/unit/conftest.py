"""Shared fixtures for unit tests."""

import anyio
import pytest
from starlette.responses import JSONResponse


class FakeClock:
    """Controllable time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory session transport answering every request with JSON."""

    def __init__(self, session_id: str, status_code: int = 200, fail_close: bool = False) -> None:
        self.session_id = session_id
        self.status_code = status_code
        self.fail_close = fail_close
        self.started = False
        self.requests: list[dict] = []
        self.close_calls = 0
        self._closed = anyio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def start(self, task_group) -> None:
        self.started = True
        await anyio.sleep(0)

    async def handle_request(self, scope, receive, send) -> None:
        message = await receive()
        self.requests.append({"method": scope["method"], "body": message.get("body", b"")})
        response = JSONResponse(
            {"jsonrpc": "2.0", "id": 1, "result": {"session": self.session_id}},
            status_code=self.status_code,
            headers={"mcp-session-id": self.session_id},
        )
        await response(scope, receive, send)

    async def close(self) -> None:
        self.close_calls += 1
        if self.fail_close:
            raise RuntimeError("transport close failed")
        self._closed.set()

    def disconnect(self) -> None:
        """Simulate the transport closing on its own."""
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class FakeTransportFactory:
    """Records every transport it creates."""

    def __init__(self, **transport_kwargs) -> None:
        self.transport_kwargs = transport_kwargs
        self.created: list[FakeTransport] = []

    def __call__(self, session_id: str) -> FakeTransport:
        transport = FakeTransport(session_id, **self.transport_kwargs)
        self.created.append(transport)
        return transport


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def rejecting_transport_factory():
    """Transports that answer initialize with HTTP 400."""
    return FakeTransportFactory(status_code=400)
