"""
Tests for the connection manager.

Covers the WebSocket lifecycle (single-flight connect, retries, reconnect),
the state machine and the HTTP request channel.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from unreal_bridge.connection import (
    Command,
    ConnectAttempt,
    ConnectionManager,
    ConnectionState,
    calculate_backoff_delay,
    classify_connection_error,
    resolve_call_timeout,
)
from unreal_bridge.errors import (
    CommandBlockedError,
    EngineConnectionError,
    EngineConnectionRefused,
    EngineConnectionTimeout,
    NotConnectedError,
    RemoteExecutionError,
    RequestTimeoutError,
)
from unreal_bridge.tests.conftest import FakeWebSocket, connect_timeout_error

CONNECT = "unreal_bridge.connection.websockets.connect"


class TestConnect:
    """Test cases for connect()."""

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_connect_success(self, connection):
        websocket = FakeWebSocket()
        with patch(CONNECT, new=AsyncMock(return_value=websocket)) as mock_connect:
            await connection.connect()

        assert connection.is_connected
        assert connection.state is ConnectionState.CONNECTED
        assert connection.websocket is websocket
        assert mock_connect.call_args.args[0] == "ws://127.0.0.1:30020"
        assert connection.current_attempt.settled

        await connection.aclose()
        assert connection.state is ConnectionState.DISCONNECTED
        assert websocket.close_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_connect_when_connected_is_noop(self, connected):
        with patch(CONNECT, new=AsyncMock()) as mock_connect:
            await connected.connect()

        mock_connect.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_concurrent_connects_open_one_socket(self, connection):
        websocket = FakeWebSocket()
        opened = asyncio.Event()

        async def slow_open(*args, **kwargs):
            await opened.wait()
            return websocket

        with patch(CONNECT, new=AsyncMock(side_effect=slow_open)) as mock_connect:
            first = asyncio.create_task(connection.connect())
            second = asyncio.create_task(connection.connect())
            await asyncio.sleep(0)
            opened.set()
            await asyncio.gather(first, second)

        assert mock_connect.call_count == 1
        assert connection.connection_attempts == 1
        assert connection.is_connected
        await connection.aclose()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_concurrent_connects_share_failure(self, connection):
        gate = asyncio.Event()

        async def refused(*args, **kwargs):
            await gate.wait()
            raise ConnectionRefusedError("[Errno 111] Connection refused")

        with patch(CONNECT, new=AsyncMock(side_effect=refused)) as mock_connect:
            first = asyncio.create_task(connection.connect())
            second = asyncio.create_task(connection.connect())
            await asyncio.sleep(0)
            gate.set()
            results = await asyncio.gather(first, second, return_exceptions=True)

        assert mock_connect.call_count == 1
        assert all(isinstance(r, EngineConnectionRefused) for r in results)
        assert connection.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_connect_timeout(self, connection):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        with patch(CONNECT, new=AsyncMock(side_effect=hang)):
            with pytest.raises(EngineConnectionTimeout):
                await connection.connect(timeout=0.01)

        assert connection.state is ConnectionState.DISCONNECTED
        assert connection.last_connection_error.error.error_type == "ConnectionTimeout"
        assert connection.get_connection_stats()["last_error"]["is_recoverable"] is True

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_connect_generic_error(self, connection):
        with patch(CONNECT, new=AsyncMock(side_effect=OSError("handshake failed"))):
            with pytest.raises(EngineConnectionError) as exc_info:
                await connection.connect()

        assert type(exc_info.value) is EngineConnectionError
        assert "handshake failed" in exc_info.value.message


class TestTryConnect:
    """Test cases for try_connect()."""

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_three_timeouts_return_false(self, connection, sleep_recorder):
        with patch(CONNECT, new=AsyncMock(side_effect=asyncio.TimeoutError())) as mock_connect:
            result = await connection.try_connect(3, 0.01, 1.0)

        assert result is False
        assert mock_connect.call_count == 3
        assert sleep_recorder.delays == [1.0, 1.5]
        assert connection.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_retry_until_success(self, connection):
        websocket = FakeWebSocket()
        side_effect = [ConnectionRefusedError("Connection refused"), websocket]

        with patch(CONNECT, new=AsyncMock(side_effect=side_effect)) as mock_connect:
            result = await connection.try_connect(3, 0.1, 0.0)

        assert result is True
        assert mock_connect.call_count == 2
        assert connection.successful_connections == 1
        await connection.aclose()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_backoff_is_capped(self, connection, sleep_recorder):
        with patch(CONNECT, new=AsyncMock(side_effect=ConnectionRefusedError("refused"))):
            await connection.try_connect(6, 0.01, 4.0)

        assert sleep_recorder.delays == [4.0, 6.0, 9.0, 10.0, 10.0]

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_concurrent_try_connect_share_one_loop(self, connection):
        gate = asyncio.Event()
        websocket = FakeWebSocket()

        async def slow_open(*args, **kwargs):
            await gate.wait()
            return websocket

        with patch(CONNECT, new=AsyncMock(side_effect=slow_open)) as mock_connect:
            first = asyncio.create_task(connection.try_connect())
            second = asyncio.create_task(connection.try_connect())
            await asyncio.sleep(0)
            gate.set()
            assert await asyncio.gather(first, second) == [True, True]

        assert mock_connect.call_count == 1
        await connection.aclose()


class TestStateMachine:
    """Test cases for state transitions and socket events."""

    def test_illegal_transition_raises(self, connection):
        with pytest.raises(RuntimeError):
            connection._transition(ConnectionState.CONNECTED)

    @pytest.mark.asyncio
    async def test_connect_attempt_settles_once(self):
        attempt = ConnectAttempt(1, asyncio.get_running_loop().create_future())

        assert attempt.settle() is True
        assert attempt.settle(EngineConnectionError("late close")) is False
        assert attempt.rejected_settles == 1
        assert await attempt.future is True

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_unexpected_close_disconnects(self, connection):
        websocket = FakeWebSocket()
        disconnected = asyncio.Event()
        connection.add_disconnection_callback(disconnected.set)

        with patch(CONNECT, new=AsyncMock(return_value=websocket)):
            await connection.connect()
        websocket.push({"type": "event"})
        websocket.drop()
        await asyncio.wait_for(disconnected.wait(), 1)

        assert connection.state is ConnectionState.DISCONNECTED
        assert connection.websocket is None
        assert connection.message_count == 1

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_disconnect_is_idempotent(self, connected):
        await connected.disconnect()
        await connected.disconnect()

        assert connected.state is ConnectionState.DISCONNECTED
        assert not connected.is_connected

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_connected_callback_runs(self, connection):
        calls = []

        async def on_connected():
            calls.append("async")

        connection.add_connection_callback(on_connected)
        connection.add_connection_callback(lambda: calls.append("sync"))

        with patch(CONNECT, new=AsyncMock(return_value=FakeWebSocket())):
            await connection.connect()

        assert calls == ["async", "sync"]
        await connection.aclose()


class TestAutoReconnect:
    """Test cases for the reconnect loop."""

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_reconnects_after_drop(self, connection):
        first, second = FakeWebSocket(), FakeWebSocket()
        connection.set_auto_reconnect_enabled(True)

        with patch(CONNECT, new=AsyncMock(side_effect=[first, second])):
            await connection.connect()
            first.drop()
            await asyncio.sleep(0.05)

        assert connection.is_connected
        assert connection.websocket is second
        assert connection.reconnect_attempts == 0
        await connection.aclose()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_gives_up_after_max_attempts(self, settings, rc_stub, sleep_recorder):
        settings.reconnect_max_attempts = 2
        connection = ConnectionManager(settings, http_transport=rc_stub.transport, sleep=sleep_recorder)
        connection.set_auto_reconnect_enabled(True)
        websocket = FakeWebSocket()

        side_effect = [websocket, ConnectionRefusedError("refused"), ConnectionRefusedError("refused")]
        with patch(CONNECT, new=AsyncMock(side_effect=side_effect)) as mock_connect:
            await connection.connect()
            websocket.drop()
            await asyncio.sleep(0.05)

        assert mock_connect.call_count == 3
        assert connection.reconnect_attempts == 2
        assert not connection.is_connected
        await connection.aclose()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_manual_connect_restores_reconnect_budget(self, settings, rc_stub, sleep_recorder):
        settings.reconnect_max_attempts = 1
        connection = ConnectionManager(settings, http_transport=rc_stub.transport, sleep=sleep_recorder)
        connection.set_auto_reconnect_enabled(True)
        first, second, third = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()

        side_effect = [first, ConnectionRefusedError("refused"), second, third]
        with patch(CONNECT, new=AsyncMock(side_effect=side_effect)) as mock_connect:
            await connection.connect()
            first.drop()
            await asyncio.sleep(0.05)
            assert connection.reconnect_attempts == 1

            await connection.connect()
            assert connection.reconnect_attempts == 0

            second.drop()
            await asyncio.sleep(0.05)

        assert mock_connect.call_count == 4
        assert connection.websocket is third
        await connection.aclose()

    @pytest.mark.asyncio
    @pytest.mark.websocket
    async def test_disabled_auto_reconnect_stays_down(self, connection):
        websocket = FakeWebSocket()
        with patch(CONNECT, new=AsyncMock(return_value=websocket)) as mock_connect:
            await connection.connect()
            websocket.drop()
            await asyncio.sleep(0.02)

        assert mock_connect.call_count == 1
        assert connection.state is ConnectionState.DISCONNECTED

    def test_backoff_delay(self):
        assert calculate_backoff_delay(0, 1.0, 30.0, jitter=False) == 1.0
        assert calculate_backoff_delay(3, 1.0, 30.0, jitter=False) == 8.0
        assert calculate_backoff_delay(10, 1.0, 30.0, jitter=True) == 30.0
        assert 2.0 <= calculate_backoff_delay(1, 1.0, 30.0) <= 3.0


@pytest.mark.http
class TestHttpChannel:
    """Test cases for request() and call()."""

    @pytest.mark.asyncio
    async def test_request_when_disconnected_does_no_io(self, connection, rc_stub):
        with pytest.raises(NotConnectedError):
            await connection.call(Command.console("stat fps"))

        assert rc_stub.call_count == 0

    @pytest.mark.asyncio
    async def test_call_sends_remote_control_body(self, connected, rc_stub):
        rc_stub.respond("ExecuteConsoleCommand", {"ReturnValue": True, "LogOutput": []})

        result = await connected.call(Command.console("stat fps"))

        assert result == {"ReturnValue": True, "LogOutput": []}
        method, path, body = rc_stub.requests[0]
        assert (method, path) == ("PUT", "/remote/object/call")
        assert body == {
            "objectPath": "/Script/Engine.Default__KismetSystemLibrary",
            "functionName": "ExecuteConsoleCommand",
            "parameters": {"WorldContextObject": None, "Command": "stat fps", "SpecificPlayer": None},
            "generateTransaction": False,
        }

    @pytest.mark.asyncio
    async def test_call_accepts_plain_mapping(self, connected, rc_stub):
        await connected.call({"objectPath": "/Game/Map.Map:PersistentLevel.Cube", "functionName": "GetActorLabel"})

        assert rc_stub.requests[0][2]["generateTransaction"] is False

    @pytest.mark.asyncio
    async def test_call_blocks_crash_commands(self, connected, rc_stub):
        with pytest.raises(CommandBlockedError):
            await connected.call(Command.console("BuildPaths"))
        with pytest.raises(CommandBlockedError):
            await connected.call(Command.console("quit"))

        assert rc_stub.call_count == 0

    @pytest.mark.asyncio
    async def test_timeouts_retry_then_surface(self, connected, rc_stub, sleep_recorder):
        rc_stub.respond("ExecuteConsoleCommand", connect_timeout_error)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await connected.call(Command.console("stat fps"))

        assert rc_stub.call_count == 3
        assert len(sleep_recorder.delays) == 2
        assert exc_info.value.timeout == 10.0

    @pytest.mark.asyncio
    async def test_transport_error_recovers_on_retry(self, connected, rc_stub):
        outcomes = [httpx.ConnectError("[Errno 111] Connection refused"), {"ReturnValue": True}]
        rc_stub.respond("ExecuteConsoleCommand", lambda request, body: outcomes.pop(0))

        assert await connected.call(Command.console("stat fps")) == {"ReturnValue": True}
        assert rc_stub.call_count == 2

    @pytest.mark.asyncio
    async def test_http_error_status_is_not_retried(self, connected, rc_stub):
        rc_stub.respond("ExecutePythonCommandEx", httpx.Response(404, text="Function not found"))

        with pytest.raises(RemoteExecutionError) as exc_info:
            await connected.call({"objectPath": "x", "functionName": "ExecutePythonCommandEx"})

        assert exc_info.value.status_code == 404
        assert "Function not found" in exc_info.value.details
        assert rc_stub.call_count == 1

    @pytest.mark.asyncio
    async def test_get_exposed_uses_get(self, connected, rc_stub):
        rc_stub.respond("/remote/preset", {"Presets": []})

        assert await connected.get_exposed() == {"Presets": []}
        assert rc_stub.requests[0][:2] == ("GET", "/remote/preset")

    @pytest.mark.asyncio
    async def test_non_json_body_returned_as_text(self, connected, rc_stub):
        rc_stub.respond("ExecuteConsoleCommand", httpx.Response(200, text="plain text"))
        assert await connected.call(Command.console("stat fps")) == "plain text"


class TestTimeoutsAndClassification:
    """Test cases for resolve_call_timeout and classify_connection_error."""

    def test_default_timeout(self, settings):
        assert resolve_call_timeout("/remote/object/call", {}, settings=settings) == 10.0

    def test_override_only_extends(self, settings):
        assert resolve_call_timeout("/remote/object/call", {}, override=120, settings=settings) == 120
        assert resolve_call_timeout("/remote/object/call", {}, override=1, settings=settings) == 10.0

    def test_lighting_payload_gets_long_timeout(self, settings):
        payload = {"parameters": {"PythonCommand": "unreal.EditorLevelLibrary.build_light_maps()"}}
        assert resolve_call_timeout("/remote/object/call", payload, settings=settings) == 600.0

    def test_path_keywords(self, settings):
        assert resolve_call_timeout("/remote/asset/create", None, settings=settings) == 30.0
        assert resolve_call_timeout("/remote/light", None, settings=settings) == 60.0

    def test_timeout_is_capped(self, settings):
        assert resolve_call_timeout("/x", {}, override=99999, settings=settings) == 1800.0

    @pytest.mark.parametrize("exception,expected", [
        (asyncio.TimeoutError(), EngineConnectionTimeout),
        (ConnectionRefusedError("nope"), EngineConnectionRefused),
        (OSError("[Errno 61] Connection refused"), EngineConnectionRefused),
        (OSError("connect ECONNREFUSED 127.0.0.1:30020"), EngineConnectionRefused),
        (OSError("Name or service not known"), EngineConnectionError),
    ])
    def test_classify(self, exception, expected):
        assert type(classify_connection_error(exception)) is expected
