"""
Connection manager for the Unreal Remote Control API.

Owns the two channels to the editor: a persistent WebSocket used for liveness
and best-effort event logging, and the HTTP request/response channel used for
every remote call. Connection state changes only through ``_transition`` and
each connect attempt settles exactly once.
"""

import asyncio
import inspect
import json
import logging
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from .config import Settings, get_settings
from .errors import (
    BridgeError,
    CommandBlockedError,
    EngineConnectionError,
    EngineConnectionRefused,
    EngineConnectionTimeout,
    NotConnectedError,
    RemoteExecutionError,
    RequestTimeoutError,
    is_transient_error,
)
from .result_codec import excerpt
from .safety import is_crash_command, is_dangerous_command

logger = logging.getLogger(__name__)

KISMET_SYSTEM_LIBRARY = "/Script/Engine.Default__KismetSystemLibrary"
PYTHON_SCRIPT_LIBRARY = "/Script/PythonScriptPlugin.Default__PythonScriptLibrary"

CALL_PATH = "/remote/object/call"
PRESET_PATH = "/remote/preset"

# Payload signatures of editor jobs that can run for minutes
LONG_RUNNING_PATTERNS = (
    re.compile(r"build_light_maps", re.IGNORECASE),
    re.compile(r"lightingbuildquality", re.IGNORECASE),
    re.compile(r"editorbuildlibrary", re.IGNORECASE),
    re.compile(r"buildlighting", re.IGNORECASE),
    re.compile(r'"command"\s*:\s*"buildlighting', re.IGNORECASE),
)


class ConnectionState(Enum):
    """WebSocket connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


@dataclass(frozen=True)
class Command:
    """One remote function call against an editor object."""
    object_path: str
    function_name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    generate_transaction: bool = False

    def to_body(self) -> Dict[str, Any]:
        return {
            "objectPath": self.object_path,
            "functionName": self.function_name,
            "parameters": dict(self.parameters),
            "generateTransaction": self.generate_transaction,
        }

    @classmethod
    def console(cls, command: str) -> "Command":
        """ExecuteConsoleCommand call for ``command``."""
        return cls(
            object_path=KISMET_SYSTEM_LIBRARY,
            function_name="ExecuteConsoleCommand",
            parameters={"WorldContextObject": None, "Command": command, "SpecificPlayer": None},
        )


@dataclass
class ConnectionErrorInfo:
    """Detailed information about a connection error."""
    error: BridgeError
    timestamp: float = field(default_factory=time.time)
    retry_count: int = 0

    @property
    def is_recoverable(self) -> bool:
        return is_transient_error(self.error)


class ConnectAttempt:
    """Outcome of one socket-open attempt; settles exactly once."""

    def __init__(self, number: int, future: asyncio.Future):
        self.number = number
        self.future = future
        self.rejected_settles = 0

    def settle(self, error: Optional[BaseException] = None) -> bool:
        """Resolve (or reject with ``error``); later calls are ignored."""
        if self.future.done():
            self.rejected_settles += 1
            return False
        if error is None:
            self.future.set_result(True)
        else:
            self.future.set_exception(error)
            # Outcome is re-raised by connect(); avoid "never retrieved" noise
            self.future.exception()
        return True

    @property
    def settled(self) -> bool:
        return self.future.done()


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0, jitter: bool = True) -> float:
    """
    Calculate exponential backoff delay with optional jitter.

    Args:
        attempt: Current attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Whether to add up to one second of random jitter

    Returns:
        Delay in seconds
    """
    delay = base_delay * (2 ** attempt)
    if jitter:
        delay += random.random()
    return min(delay, max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int,
    initial_delay: float,
    max_delay: float,
    multiplier: float = 1.5,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Any:
    """Run ``operation`` until it succeeds, a non-retryable error occurs or attempts run out."""
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise
            logger.debug(f"Attempt {attempt}/{max_attempts} failed ({e}); retrying in {delay:.2f}s")
            await sleep(delay)
            delay = min(delay * multiplier, max_delay)


def resolve_call_timeout(
    path: str,
    payload: Any = None,
    override: Optional[float] = None,
    settings: Optional[Settings] = None
) -> float:
    """
    Pick the timeout for one HTTP call.

    Heavy editor operations (asset creation, builds, lighting) get longer
    budgets; lighting builds recognized from the payload get the long-running
    budget. Everything is capped at ``max_call_timeout``.
    """
    settings = settings or get_settings()
    timeout = settings.call_timeout
    if override and override > 0:
        timeout = max(timeout, override)

    if "build" in path or "create" in path or "asset" in path:
        timeout = max(timeout, 30.0)
    if "light" in path or "BuildLighting" in path:
        timeout = max(timeout, 60.0)

    if isinstance(payload, str):
        signature = payload
    elif payload is not None:
        try:
            signature = json.dumps(payload, default=str)
        except (TypeError, ValueError):
            signature = ""
    else:
        signature = ""

    if signature and any(pattern.search(signature) for pattern in LONG_RUNNING_PATTERNS):
        if timeout < settings.long_call_timeout:
            logger.debug(f"Detected long-running lighting operation, extending HTTP timeout to {settings.long_call_timeout}s")
        timeout = max(timeout, settings.long_call_timeout)

    return min(timeout, settings.max_call_timeout)


def classify_connection_error(exception: BaseException) -> EngineConnectionError:
    """Map a transport exception onto the bridge's connection error types."""
    if isinstance(exception, EngineConnectionError):
        return exception

    message = str(exception) or exception.__class__.__name__
    lowered = message.lower()

    if isinstance(exception, (asyncio.TimeoutError, httpx.TimeoutException)):
        return EngineConnectionTimeout(
            "Connection timeout: Unreal Engine may not be running or Remote Control is not enabled",
            details=message
        )
    if (
        isinstance(exception, ConnectionRefusedError)
        or "connection refused" in lowered
        or "econnrefused" in lowered
        or "errno 61" in lowered
        or "errno 111" in lowered
    ):
        return EngineConnectionRefused(
            f"Unreal Remote Control not accepting connections: {message}",
            details=message
        )
    if isinstance(exception, ConnectionClosed):
        return EngineConnectionError(f"WebSocket connection lost: {message}", details=message)
    return EngineConnectionError(f"Failed to connect: {message}", details=message)


StateCallback = Callable[[], Union[None, Awaitable[None]]]


class ConnectionManager:
    """
    Dual-channel connection to the Unreal Editor.

    Provides single-flight connects, backoff retries, optional auto reconnect
    and the HTTP RPC path used by every remote call.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        """
        Initialize the connection manager.

        Args:
            settings: Bridge settings. If not provided, uses get_settings().
            http_transport: Optional httpx transport (tests pass a MockTransport)
            sleep: Optional sleep coroutine used for backoff delays
        """
        self.settings = settings or get_settings()
        self.ws_url = self.settings.ws_url
        self.http_base_url = self.settings.http_base_url

        # Connection state
        self.websocket = None
        self.state = ConnectionState.DISCONNECTED
        self.auto_reconnect_enabled = self.settings.auto_reconnect
        self.last_connection_error: Optional[ConnectionErrorInfo] = None
        self.connection_attempts = 0
        self.successful_connections = 0
        self.reconnect_attempts = 0
        self.message_count = 0

        self._sleep = sleep or asyncio.sleep
        self._http_transport = http_transport
        self._http: Optional[httpx.AsyncClient] = None

        self._current_attempt: Optional[ConnectAttempt] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._try_connect_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._connected_callbacks: List[StateCallback] = []
        self._disconnected_callbacks: List[StateCallback] = []

    # --- state ---------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self.websocket is not None

    @property
    def current_attempt(self) -> Optional[ConnectAttempt]:
        return self._current_attempt

    def _transition(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if new_state is old_state:
            return
        if new_state not in _TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal connection state transition: {old_state.value} -> {new_state.value}")
        self.state = new_state
        logger.info(f"Connection state changed: {old_state.value} -> {new_state.value}")

    def add_connection_callback(self, callback: StateCallback) -> None:
        """Add callback run after every successful connect."""
        self._connected_callbacks.append(callback)

    def add_disconnection_callback(self, callback: StateCallback) -> None:
        """Add callback run after the connection is lost or closed."""
        self._disconnected_callbacks.append(callback)

    async def _notify(self, callbacks: List[StateCallback]) -> None:
        for callback in list(callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def set_auto_reconnect_enabled(self, enabled: bool) -> None:
        """Allow callers to enable/disable auto-reconnect behavior."""
        self.auto_reconnect_enabled = enabled
        if not enabled and self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()

    # --- connect / disconnect -------------------------------------------

    async def connect(self, timeout: Optional[float] = None) -> None:
        """
        Open the WebSocket channel.

        Returns immediately when already connected; concurrent callers join the
        in-flight attempt instead of opening a second socket.

        Raises:
            EngineConnectionTimeout: no open event within ``timeout``
            EngineConnectionRefused: the editor is not listening
            EngineConnectionError: any other transport failure
        """
        if self.is_connected:
            logger.debug("connect() called but already connected; skipping")
            return

        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._open(timeout or self.settings.connect_timeout))
            self._connect_task = task
        else:
            logger.debug("Connection attempt already in flight; joining it")

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise EngineConnectionError("Connection attempt cancelled by disconnect") from None
            raise
        finally:
            if self._connect_task is task and task.done():
                self._connect_task = None

    async def _open(self, timeout: float) -> None:
        self._transition(ConnectionState.CONNECTING)
        self.connection_attempts += 1
        attempt = ConnectAttempt(self.connection_attempts, asyncio.get_running_loop().create_future())
        self._current_attempt = attempt

        logger.debug(f"Connecting to UE Remote Control: {self.ws_url}")
        try:
            websocket = await asyncio.wait_for(
                websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20),
                timeout=timeout
            )
        except asyncio.CancelledError:
            self._fail_attempt(attempt, EngineConnectionError("Connection attempt cancelled"))
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"Connection timeout after {timeout}s")
            self._fail_attempt(attempt, EngineConnectionTimeout(
                "Connection timeout: Unreal Engine may not be running or Remote Control is not enabled",
                details=str(e) or None
            ))
        except Exception as e:
            # Keep it short; a closed editor is routine
            logger.debug(f"WebSocket error during connect: {e}")
            self._fail_attempt(attempt, classify_connection_error(e))
        else:
            self.websocket = websocket
            self._transition(ConnectionState.CONNECTED)
            self.successful_connections += 1
            self.last_connection_error = None
            self.reconnect_attempts = 0
            self._listener_task = asyncio.create_task(self._message_listener(websocket))
            attempt.settle()
            logger.info(
                f"Connected to Unreal Remote Control at {self.ws_url} "
                f"(success rate: {self.successful_connections}/{self.connection_attempts})"
            )
            await self._notify(self._connected_callbacks)

        await attempt.future

    def _fail_attempt(self, attempt: ConnectAttempt, error: EngineConnectionError) -> None:
        self.last_connection_error = ConnectionErrorInfo(error, retry_count=self.reconnect_attempts)
        if self.state in (ConnectionState.CONNECTING, ConnectionState.ERROR):
            self._transition(ConnectionState.DISCONNECTED)
        attempt.settle(error)

    async def try_connect(
        self,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        retry_delay: Optional[float] = None
    ) -> bool:
        """
        Connect with exponential backoff, returning False instead of raising.

        Only transient errors (timeout, refused, connection errors) are retried.
        Concurrent callers share one retry loop.
        """
        if self.is_connected:
            return True

        task = self._try_connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._connect_with_retry(
                max_attempts or self.settings.connect_max_attempts,
                timeout or self.settings.connect_timeout,
                self.settings.connect_retry_delay if retry_delay is None else retry_delay
            ))
            self._try_connect_task = task

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        finally:
            if self._try_connect_task is task and task.done():
                self._try_connect_task = None

        return self.is_connected

    async def _connect_with_retry(self, max_attempts: int, timeout: float, retry_delay: float) -> None:
        try:
            await retry_with_backoff(
                lambda: self.connect(timeout),
                max_attempts=max_attempts,
                initial_delay=retry_delay,
                max_delay=self.settings.connect_max_delay,
                multiplier=self.settings.connect_backoff_multiplier,
                sleep=self._sleep
            )
        except Exception as e:
            logger.warning(f"Connection failed after {max_attempts} attempts: {e}")

    async def disconnect(self) -> None:
        """Close the WebSocket and reset to DISCONNECTED. Safe to call repeatedly."""
        reconnect_task, self._reconnect_task = self._reconnect_task, None
        await self._cancel(reconnect_task)

        connect_task, self._connect_task = self._connect_task, None
        await self._cancel(connect_task)

        listener_task, self._listener_task = self._listener_task, None
        await self._cancel(listener_task)

        was_connected = self.state is ConnectionState.CONNECTED
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket connection: {e}")

        if self.state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
            logger.info("Disconnected from Unreal Remote Control")

        if was_connected:
            await self._notify(self._disconnected_callbacks)

    async def aclose(self) -> None:
        """Disconnect and release the HTTP client."""
        await self.disconnect()
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled task ended with error: {e}")

    # --- socket events ----------------------------------------------------

    async def _message_listener(self, websocket) -> None:
        """Read socket events until the connection closes."""
        error: Optional[BaseException] = None
        try:
            async for message in websocket:
                self.message_count += 1
                try:
                    logger.debug(f"WS message: {json.loads(message)}")
                except (TypeError, ValueError):
                    pass
        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error in message listener: {e}")
            error = e

        await self._handle_socket_closed(websocket, error)

    async def _handle_socket_closed(self, websocket, error: Optional[BaseException] = None) -> None:
        if websocket is not self.websocket:
            return
        self.websocket = None

        attempt = self._current_attempt
        if attempt is not None:
            attempt.settle(EngineConnectionError("Connection closed before establishing"))

        if self.state is not ConnectionState.CONNECTED:
            return

        self._transition(ConnectionState.ERROR if error else ConnectionState.DISCONNECTED)
        logger.warning("WebSocket closed")
        await self._notify(self._disconnected_callbacks)

        if self.auto_reconnect_enabled:
            self._schedule_reconnect()

    # --- reconnect ----------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if not self.auto_reconnect_enabled:
            logger.info("Auto-reconnect disabled; not scheduling reconnection")
            return
        if self.is_connected or (self._reconnect_task and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self.settings.reconnect_max_attempts
        while self.auto_reconnect_enabled and not self.is_connected:
            if self.reconnect_attempts >= max_attempts:
                logger.error("Max reconnection attempts reached. Please check Unreal Engine.")
                return

            delay = calculate_backoff_delay(
                self.reconnect_attempts,
                self.settings.reconnect_base_delay,
                self.settings.reconnect_max_delay
            )
            logger.debug(f"Scheduling reconnection attempt {self.reconnect_attempts + 1}/{max_attempts} in {delay:.2f}s")
            await self._sleep(delay)
            self.reconnect_attempts += 1

            try:
                await self.connect()
            except EngineConnectionError as e:
                logger.warning(f"Reconnection attempt failed: {e}")
            else:
                self.reconnect_attempts = 0
                logger.info("Successfully reconnected to Unreal Engine")
                return

    # --- HTTP channel -------------------------------------------------------

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.http_base_url,
                transport=self._http_transport,
                timeout=self.settings.call_timeout
            )
        return self._http

    async def request(
        self,
        path: str,
        method: str = "POST",
        body: Any = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Send one HTTP request to the Remote Control API.

        Timeouts and transport errors are retried with exponential backoff; HTTP
        error statuses are surfaced immediately as RemoteExecutionError.

        Raises:
            NotConnectedError: the bridge is not connected (no I/O attempted)
            RequestTimeoutError: every attempt timed out
            EngineConnectionError: every attempt failed at the transport level
            RemoteExecutionError: the editor answered with an error status
        """
        if not self.is_connected:
            raise NotConnectedError()

        url = path if path.startswith("/") else f"/{path}"
        payload = body
        if payload is None and method != "GET":
            payload = {}

        call_timeout = resolve_call_timeout(url, payload, timeout, self.settings)
        client = self._get_http_client()
        max_attempts = max(1, self.settings.http_max_attempts)
        last_error: Optional[BridgeError] = None

        for attempt in range(max_attempts):
            started = time.monotonic()
            try:
                if method == "GET":
                    request = client.request(method, url, params=payload or None, timeout=call_timeout)
                else:
                    request = client.request(method, url, json=payload, timeout=call_timeout)
                response = await asyncio.wait_for(request, timeout=call_timeout)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                raise RemoteExecutionError(
                    f"Remote Control returned HTTP {status} for {method} {url}",
                    details=excerpt(e.response.text),
                    status_code=status
                ) from e
            except (asyncio.TimeoutError, httpx.TimeoutException):
                last_error = RequestTimeoutError(f"Request timeout after {call_timeout}s: {url}", timeout=call_timeout)
                logger.debug(f"HTTP request timed out (attempt {attempt + 1}/{max_attempts}): {url}")
            except httpx.TransportError as e:
                last_error = classify_connection_error(e)
                logger.debug(f"HTTP transport error (attempt {attempt + 1}/{max_attempts}): {e}")
            else:
                elapsed = time.monotonic() - started
                if elapsed > 5:
                    logger.debug(f"[HTTP {method}] {url} -> {elapsed * 1000:.0f}ms (long request)")
                else:
                    logger.debug(f"[HTTP {method}] {url} -> {elapsed * 1000:.0f}ms")
                return self._decode_body(response)

            if attempt < max_attempts - 1:
                delay = min(self.settings.http_retry_base_delay * (2 ** attempt), self.settings.http_retry_max_delay)
                logger.debug(f"HTTP request failed (attempt {attempt + 1}/{max_attempts}), retrying in {delay:.2f}s...")
                await self._sleep(delay)

        raise last_error

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    async def call(self, body: Union[Command, Mapping[str, Any]], timeout: Optional[float] = None) -> Any:
        """
        Call a function on an editor object (PUT /remote/object/call).

        Raises:
            NotConnectedError: the bridge is not connected
            CommandBlockedError: the body smuggles a crash or dangerous console command
        """
        if not self.is_connected:
            raise NotConnectedError()

        payload = body.to_body() if isinstance(body, Command) else {"generateTransaction": False, **body}

        if payload.get("functionName") == "ExecuteConsoleCommand":
            command = (payload.get("parameters") or {}).get("Command")
            if isinstance(command, str):
                if is_crash_command(command):
                    logger.warning(f"BLOCKED dangerous command that causes crashes: {command}")
                    raise CommandBlockedError(command, "This command can cause Unreal Engine to crash.")
                if is_dangerous_command(command) and not command.strip().lower().startswith("py "):
                    logger.warning(f"BLOCKED potentially dangerous command: {command}")
                    raise CommandBlockedError(command, "Dangerous command blocked for safety.")

        return await self.request(CALL_PATH, "PUT", payload, timeout=timeout)

    async def get_exposed(self) -> Any:
        """Discover exposed properties (GET /remote/preset)."""
        return await self.request(PRESET_PATH, "GET")

    def get_connection_stats(self) -> dict:
        """
        Get detailed connection statistics.

        Returns:
            Dictionary with connection statistics and error information
        """
        success_rate = 0.0
        if self.connection_attempts > 0:
            success_rate = self.successful_connections / self.connection_attempts

        stats = {
            "connection_attempts": self.connection_attempts,
            "successful_connections": self.successful_connections,
            "success_rate": success_rate,
            "current_state": self.state.value,
            "ws_url": self.ws_url,
            "http_base_url": self.http_base_url,
            "auto_reconnect_enabled": self.auto_reconnect_enabled,
            "reconnect_attempts": self.reconnect_attempts,
            "message_count": self.message_count,
            "last_error": None,
        }

        if self.last_connection_error:
            stats["last_error"] = {
                "type": self.last_connection_error.error.error_type,
                "message": self.last_connection_error.error.message,
                "timestamp": self.last_connection_error.timestamp,
                "retry_count": self.last_connection_error.retry_count,
                "is_recoverable": self.last_connection_error.is_recoverable,
            }

        return stats
