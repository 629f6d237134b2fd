"""
Pytest configuration and fixtures for Unreal bridge testing.

Provides a fake WebSocket, an httpx MockTransport standing in for the Remote
Control HTTP API, a controllable clock and settings with every delay zeroed.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from unreal_bridge.bridge import UnrealBridge
from unreal_bridge.command_queue import CommandQueue, QueueConfig
from unreal_bridge.config import Settings
from unreal_bridge.connection import ConnectionManager

# Set up test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Sleep replacement that records delays and only yields to the loop."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeWebSocket:
    """WebSocket double supporting ``async for`` and close."""

    def __init__(self):
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_calls = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    def push(self, message: Union[str, Dict[str, Any]]) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the editor closing the socket."""
        self.closed = True
        self._incoming.put_nowait(None)

    async def close(self):
        self.close_calls += 1
        self.closed = True
        self._incoming.put_nowait(None)


Responder = Union[Any, Callable[[httpx.Request, Dict[str, Any]], Any]]


class RemoteControlStub:
    """
    Scriptable Remote Control HTTP API.

    Responses are registered per ``functionName`` (or per path for GET
    requests). A responder may be a JSON-able value, an ``httpx.Response``, an
    exception to raise, or a callable returning any of those.
    """

    def __init__(self):
        self.requests: List[Tuple[str, str, Dict[str, Any]]] = []
        self.responders: Dict[str, Responder] = {}
        self.default: Responder = {"ReturnValue": True}

    def respond(self, key: str, responder: Responder) -> None:
        self.responders[key] = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))

        key = body.get("functionName") or request.url.path
        responder = self.responders.get(key, self.default)
        if callable(responder) and not isinstance(responder, type):
            responder = responder(request, body)
        if isinstance(responder, BaseException):
            raise responder
        if isinstance(responder, httpx.Response):
            return httpx.Response(responder.status_code, headers=responder.headers, content=responder.content)
        return httpx.Response(200, json=responder)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def calls_to(self, function_name: str) -> List[Dict[str, Any]]:
        return [body for _, _, body in self.requests if body.get("functionName") == function_name]

    def console_commands(self) -> List[str]:
        return [body["parameters"]["Command"] for body in self.calls_to("ExecuteConsoleCommand")]


def python_output(*lines: str) -> Dict[str, Any]:
    """Remote Control response for a script that printed ``lines``."""
    return {
        "ReturnValue": True,
        "CommandResult": "",
        "LogOutput": [{"Type": "Info", "Output": line} for line in lines],
    }


def connect_timeout_error(request: httpx.Request, body: Dict[str, Any]) -> httpx.TimeoutException:
    return httpx.ConnectTimeout("timed out", request=request)


@pytest.fixture
def fake_clock():
    """Fixture providing a hand-driven clock."""
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def settings():
    """Fixture providing settings with every retry and throttle delay zeroed."""
    return Settings(
        host="127.0.0.1",
        rc_ws_port=30020,
        rc_http_port=30000,
        connect_timeout=0.5,
        connect_retry_delay=0.0,
        auto_reconnect=False,
        reconnect_base_delay=0.0,
        http_retry_base_delay=0.0,
        http_retry_max_delay=0.0,
        queue_min_command_delay=0.0,
        queue_max_command_delay=0.0,
        queue_stat_command_delay=0.0,
        script_line_delay=0.0,
    )


@pytest.fixture
def rc_stub():
    """Fixture providing the Remote Control HTTP stub."""
    return RemoteControlStub()


@pytest.fixture
def connection(settings, rc_stub, sleep_recorder):
    return ConnectionManager(settings, http_transport=rc_stub.transport, sleep=sleep_recorder)


@pytest_asyncio.fixture
async def connected(connection):
    """ConnectionManager connected to a FakeWebSocket."""
    websocket = FakeWebSocket()
    with patch("unreal_bridge.connection.websockets.connect", new=AsyncMock(return_value=websocket)):
        await connection.connect()
    yield connection
    await connection.aclose()


@pytest.fixture
def make_bridge(settings, connection, fake_clock, sleep_recorder):
    """Factory for bridges sharing the stubbed connection."""
    def factory(bridge_settings: Optional[Settings] = None) -> UnrealBridge:
        return UnrealBridge(
            bridge_settings or settings,
            connection=connection,
            queue=CommandQueue(QueueConfig.unthrottled()),
            clock=fake_clock,
            sleep=sleep_recorder,
        )
    return factory


@pytest_asyncio.fixture
async def bridge(make_bridge):
    """UnrealBridge connected to a FakeWebSocket and the HTTP stub."""
    bridge = make_bridge()
    with patch("unreal_bridge.connection.websockets.connect", new=AsyncMock(return_value=FakeWebSocket())):
        result = await bridge.connect()
    assert result.success
    yield bridge
    await bridge.close()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "websocket: mark test as testing WebSocket connection handling"
    )
    config.addinivalue_line(
        "markers", "http: mark test as testing the Remote Control HTTP channel"
    )
    config.addinivalue_line(
        "markers", "security: mark test as testing the command safety filter"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
