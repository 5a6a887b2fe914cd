"""
Shared fixtures.

The connection is tested against ``FakeWebSocket``, which implements the
part of the websockets client API the connection uses (``send``, ``close``,
async iteration) and lets a test play the server side frame by frame.
"""
import asyncio
import json
from typing import Any, Callable, List, Optional, Tuple

import pytest

from hass_link.config import ConnectionConfig, ReconnectPolicy
from hass_link.websocket_client import HomeAssistantConnection


_CLOSED = object()


class FakeWebSocket:
    def __init__(self, url: str):
        self.url = url
        self.sent: List[dict] = []
        self.closed = False
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    # Server side
    def push(self, frame: Any) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self) -> None:
        """Server closes the socket."""
        self._incoming.put_nowait(_CLOSED)

    def sent_of_type(self, msg_type: str) -> List[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]

    # Client side
    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("socket is closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeServer:
    """connect_factory that hands out FakeWebSockets, or fails on demand."""

    def __init__(self):
        self.sockets: List[FakeWebSocket] = []
        self.attempts = 0
        self.refuse = 0

    async def connect(self, url: str) -> FakeWebSocket:
        self.attempts += 1
        if self.refuse:
            self.refuse -= 1
            raise OSError("Connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]


async def wait_until(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class StatusRecorder:
    def __init__(self):
        self.calls: List[Tuple[str, Optional[str]]] = []

    def __call__(self, status, reason=None):
        self.calls.append((status.value, reason))

    @property
    def statuses(self) -> List[str]:
        return [s for s, _ in self.calls]


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def statuses():
    return StatusRecorder()


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_config(statuses, events):
    def factory(**overrides) -> ConnectionConfig:
        values = dict(
            url="http://hass.test:8123",
            token="secret-token",
            on_status=statuses,
            on_event=events.append,
            subscribe_events=[],
            circuit_breaker=None,
            reconnect=ReconnectPolicy(base_delay=0.01, growth_factor=2.0, max_delay=0.05),
        )
        values.update(overrides)
        return ConnectionConfig(**values)

    return factory


@pytest.fixture
async def connection(server, make_config):
    conn = HomeAssistantConnection(make_config(), connect_factory=server.connect)
    yield conn
    await conn.disconnect()


async def handshake(server: FakeServer, conn: HomeAssistantConnection, sockets: int = 1) -> FakeWebSocket:
    """Play the server side of a successful auth on socket number ``sockets``."""
    await wait_until(lambda: len(server.sockets) >= sockets and conn._websocket is server.sockets[sockets - 1])
    ws = server.sockets[sockets - 1]
    ws.push({"type": "auth_required", "ha_version": "2024.1.0"})
    await wait_until(lambda: ws.sent_of_type("auth"))
    ws.push({"type": "auth_ok", "ha_version": "2024.1.0"})
    await wait_until(lambda: conn.is_connected)
    return ws
