"""
Unreal Engine bridge.

Public surface used by tool handlers: every request is checked by the safety
filter, queued with a priority derived from what it does, executed over the
Remote Control connection (or the script fallback ladder) and decoded into a
``BridgeResult``. Routine failures come back as ``success=False`` results
instead of exceptions.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .cache import BridgeCaches
from .command_queue import (
    CommandPriority,
    CommandQueue,
    QueueConfig,
    priority_for_command,
    priority_for_script,
)
from .config import Settings, get_settings
from .connection import Command, ConnectionManager
from .errors import (
    BridgeError,
    BridgeResult,
    InvalidCommandError,
    NotConnectedError,
    RemoteExecutionError,
    ResultParseError,
    UnknownViewModeError,
    create_error_response,
    create_success_response,
)
from .health import HealthMonitor, RequestMetrics
from .result_codec import ScriptResult, decode, excerpt, extract_log_lines
from .safety import (
    SAFE_COMMANDS,
    CommandVerdict,
    ViewModeStatus,
    resolve_view_mode,
    validate_console_command,
)
from .script_executor import ScriptExecutor
from .scripts import (
    ENGINE_VERSION_SCRIPT,
    FEATURE_FLAGS_SCRIPT,
    ScriptRequest,
    generate_plugin_check_script,
)

logger = logging.getLogger(__name__)

ENGINE_VERSION_KEY = "engine"

_UNRECOGNIZED = re.compile(r"command not recognized", re.IGNORECASE)
_VIEWMODE_REJECTED = re.compile(r"unknown|invalid", re.IGNORECASE)
_PARSE_FAILURES = ("no_result", "parse_error")


@dataclass(frozen=True)
class ConsoleCommandSummary:
    """Console command response reduced to the parts callers look at."""
    command: str
    output: str
    log_lines: List[str] = field(default_factory=list)
    return_value: Any = None
    raw: Any = field(default=None, repr=False)

    @classmethod
    def from_response(cls, command: str, response: Any) -> "ConsoleCommandSummary":
        log_lines = extract_log_lines(response)
        output = "\n".join(log_lines).strip()
        if not output:
            if isinstance(response, str):
                output = response.strip()
            elif isinstance(response, dict):
                for key in ("Output", "result", "ReturnValue"):
                    value = response.get(key)
                    if value is not None and value != "":
                        output = str(value).strip()
                        break
        return_value = response.get("ReturnValue") if isinstance(response, dict) else None
        return cls(command.strip(), output, log_lines, return_value, response)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "output": self.output,
            "log_lines": list(self.log_lines),
            "return_value": self.return_value,
        }


@dataclass(frozen=True)
class EngineVersion:
    """Parsed engine version."""
    version: str
    major: int = 0
    minor: int = 0
    patch: int = 0

    @property
    def is_ue56_or_above(self) -> bool:
        return self.major > 5 or (self.major == 5 and self.minor >= 6)

    @classmethod
    def unknown(cls) -> "EngineVersion":
        return cls("unknown")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EngineVersion":
        def number(key: str) -> int:
            try:
                return int(payload.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            version=str(payload.get("version") or "unknown"),
            major=number("major"),
            minor=number("minor"),
            patch=number("patch"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "major": self.major,
            "minor": self.minor,
            "patch": self.patch,
            "is_ue56_or_above": self.is_ue56_or_above,
        }


@dataclass(frozen=True)
class FeatureFlags:
    """Editor capabilities reported by the feature probe."""
    python_enabled: bool = False
    unreal_editor: bool = False
    level_editor: bool = False
    editor_actor: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FeatureFlags":
        return cls(
            python_enabled=bool(payload.get("pythonEnabled")),
            unreal_editor=bool(payload.get("unrealEditor")),
            level_editor=bool(payload.get("levelEditor")),
            editor_actor=bool(payload.get("editorActor")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "python_enabled": self.python_enabled,
            "subsystems": {
                "unreal_editor": self.unreal_editor,
                "level_editor": self.level_editor,
                "editor_actor": self.editor_actor,
            },
        }


def build_queue_config(settings: Settings) -> QueueConfig:
    """Queue throttle derived from settings; all-zero settings give an unthrottled queue."""
    min_delay = settings.queue_min_command_delay
    return QueueConfig(
        min_command_delay=min_delay,
        medium_command_delay=min(min_delay * 2, settings.queue_max_command_delay),
        max_command_delay=settings.queue_max_command_delay,
        stat_command_delay=settings.queue_stat_command_delay,
        stat_followup_delay=settings.queue_stat_command_delay / 2,
        jitter=min_delay / 2,
        max_concurrency=settings.queue_max_concurrency,
    )


ConsoleBatchItem = Union[str, Mapping[str, Any]]


class UnrealBridge:
    """
    Dispatcher facade over the Unreal Remote Control connection.

    Owns the connection, the command queue, the script executor, the TTL
    caches and the health monitor for one editor. Health checks start when
    the connection opens and stop when it closes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        connection: Optional[ConnectionManager] = None,
        queue: Optional[CommandQueue] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Any]] = None
    ):
        """
        Initialize the bridge.

        Args:
            settings: Bridge settings. If not provided, uses get_settings().
            connection: Pre-built connection manager (tests inject transports here)
            queue: Pre-built command queue
            clock: Monotonic clock used by the caches and the queue
            sleep: Sleep coroutine used for batch and line delays
        """
        self.settings = settings or get_settings()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.connection = connection or ConnectionManager(self.settings)
        self.queue = queue or CommandQueue(build_queue_config(self.settings), clock=self._clock)
        self.executor = ScriptExecutor(self.connection, self.settings.script_line_delay, sleep=self._sleep)
        self.caches = BridgeCaches(
            plugin_ttl=self.settings.plugin_cache_ttl,
            engine_version_ttl=self.settings.engine_version_cache_ttl,
            console_ttl=self.settings.console_cache_ttl,
            clock=self._clock,
        )
        self.metrics = RequestMetrics(clock=self._clock)
        self.health = HealthMonitor(self, clock=self._clock)

        self.connection.add_connection_callback(self._on_connected)
        self.connection.add_disconnection_callback(self._on_disconnected)

    # --- lifecycle ----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def connect(self, timeout: Optional[float] = None) -> BridgeResult:
        """Open the connection once; failures are returned, not raised."""
        try:
            await self.connection.connect(timeout)
        except BridgeError as e:
            return create_error_response(e)
        return create_success_response(self.connection.get_connection_stats())

    async def try_connect(
        self,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        retry_delay: Optional[float] = None
    ) -> bool:
        return await self.connection.try_connect(max_attempts, timeout, retry_delay)

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    def set_auto_reconnect_enabled(self, enabled: bool) -> None:
        self.connection.set_auto_reconnect_enabled(enabled)

    async def _on_connected(self) -> None:
        self.queue.start_periodic_processing(self.settings.queue_interval)
        self.caches.start_sweeper(self.settings.console_cache_ttl)
        self.health.start()

    async def _on_disconnected(self) -> None:
        await self.queue.stop_periodic_processing()
        await self.health.stop()

    async def close(self) -> None:
        """Stop background tasks, drop pending work and close both channels."""
        dropped = self.queue.clear("Bridge closed")
        if dropped:
            logger.info(f"Dropped {dropped} pending commands on close")
        await self.health.stop()
        await self.queue.stop_periodic_processing()
        await self.caches.stop_sweeper()
        await self.connection.aclose()

    # --- dispatch -----------------------------------------------------------

    def _finish(self, started: float, scope: str, result: BridgeResult) -> BridgeResult:
        self.metrics.record(self._clock() - started, result.success)
        if not result.success:
            self.metrics.record_error(scope, result)
        return result

    async def call(
        self,
        body: Union[Command, Mapping[str, Any]],
        priority: int = CommandPriority.NORMAL,
        timeout: Optional[float] = None
    ) -> BridgeResult:
        """Queue one remote function call and return its decoded JSON response."""
        started = self._clock()
        if not self.is_connected:
            return self._finish(started, "call", create_error_response(NotConnectedError()))

        try:
            data = await self.queue.enqueue(
                lambda: self.connection.call(body, timeout=timeout),
                priority,
                label="remote call"
            )
        except BridgeError as e:
            return self._finish(started, "call", create_error_response(e))
        return self._finish(started, "call", create_success_response(data))

    async def get_exposed(self) -> BridgeResult:
        """List exposed Remote Control presets."""
        started = self._clock()
        try:
            data = await self.connection.get_exposed()
        except BridgeError as e:
            return self._finish(started, "get_exposed", create_error_response(e))
        return self._finish(started, "get_exposed", create_success_response(data))

    async def execute_console_command(self, command: str, allow_python: bool = False) -> BridgeResult:
        """
        Run one console command.

        Blocked commands are rejected before anything is sent. Empty commands
        succeed without a round trip. Commands the editor did not recognize are
        remembered for the console cache TTL and fail fast while cached.
        """
        started = self._clock()
        if not self.is_connected:
            return self._finish(started, "console", create_error_response(NotConnectedError()))

        try:
            verdict = validate_console_command(command, allow_python=allow_python)
        except BridgeError as e:
            return self._finish(started, "console", create_error_response(e))

        if verdict.verdict is CommandVerdict.EMPTY:
            return self._finish(started, "console", create_success_response(
                ConsoleCommandSummary("", "Empty command ignored")
            ))

        cmd = verdict.command
        if self.caches.console_objects.get(cmd.lower()) is False:
            error = InvalidCommandError(f"Command not recognized by the editor: {cmd}")
            return self._finish(started, "console", create_error_response(error))

        try:
            response = await self.queue.enqueue(
                lambda: self.connection.call(Command.console(cmd)),
                priority_for_command(cmd),
                label=f"console '{cmd}'"
            )
        except BridgeError as e:
            logger.error(f"Console command failed: {cmd}")
            return self._finish(started, "console", create_error_response(e, log_level=logging.ERROR))

        summary = ConsoleCommandSummary.from_response(cmd, response)
        if _UNRECOGNIZED.search(summary.output):
            self.caches.console_objects.set(cmd.lower(), False)
            error = InvalidCommandError(f"Command not recognized by the editor: {cmd}", details=summary.output)
            return self._finish(started, "console", create_error_response(error, data=summary))

        return self._finish(started, "console", create_success_response(summary))

    async def execute_console_commands(
        self,
        commands: Iterable[ConsoleBatchItem],
        continue_on_error: bool = False,
        delay: float = 0.0
    ) -> List[BridgeResult]:
        """
        Run console commands one after another.

        Items are command strings or mappings with ``command`` and optional
        ``allow_python``. Stops at the first failure unless ``continue_on_error``.
        """
        results = []
        for item in commands:
            if isinstance(item, str):
                command, allow_python = item, False
            else:
                command, allow_python = item.get("command") or "", bool(item.get("allow_python"))
            command = command.strip()
            if not command:
                continue

            result = await self.execute_console_command(command, allow_python=allow_python)
            results.append(result)
            if not result.success:
                if not continue_on_error:
                    break
                logger.warning(f"Console batch command failed: {command}")

            if delay > 0:
                await self._sleep(delay)

        return results

    async def execute_python(
        self,
        script: Union[ScriptRequest, str],
        priority: Optional[int] = None
    ) -> BridgeResult:
        """
        Run a Python script in the editor and decode its ``RESULT:`` output.

        ``data`` is always the ScriptResult when a response came back; failed
        results are typed ResultParseError (no decodable marker) or
        RemoteExecutionError (the script or editor reported failure).
        """
        started = self._clock()
        if not self.is_connected:
            return self._finish(started, "python", create_error_response(NotConnectedError()))

        request = script if isinstance(script, ScriptRequest) else ScriptRequest.from_text(script)
        if priority is None:
            priority = priority_for_script(request.text)

        try:
            response = await self.queue.enqueue(
                lambda: self.executor.execute(request),
                priority,
                label="python script"
            )
        except BridgeError as e:
            return self._finish(started, "python", create_error_response(e))

        result = decode(response)
        if result.success:
            return self._finish(started, "python", create_success_response(result))
        return self._finish(started, "python", self._script_failure(result))

    @staticmethod
    def _script_failure(result: ScriptResult) -> BridgeResult:
        if result.error_type in _PARSE_FAILURES:
            error: BridgeError = ResultParseError(result.error, details=excerpt(result.raw_text))
        else:
            error = RemoteExecutionError(result.error, details=excerpt(result.raw_text))
        return create_error_response(error, data=result)

    async def set_view_mode(self, mode: str) -> BridgeResult:
        """
        Switch the viewport view mode.

        Modes known to crash remote sessions are replaced with a safe
        alternative; the result is then a failure that still reports the mode
        actually applied.
        """
        try:
            resolution = resolve_view_mode(mode)
        except UnknownViewModeError as e:
            return create_error_response(e, data={"accepted_modes": e.accepted_modes})

        if resolution.status is ViewModeStatus.BLOCKED:
            logger.warning(f"Viewmode '{resolution.canonical}' is blocked for safety. Using alternative.")
            alternative = resolution.target
            result = await self.execute_console_command(f"viewmode {alternative}")
            if not result.success:
                return result
            message = f"View mode '{resolution.canonical}' is unsafe in remote sessions. Switched to '{alternative}'."
            data = {
                **result.data.to_dict(),
                "requested_mode": resolution.canonical,
                "view_mode": alternative,
                "alternative": alternative,
                "message": message,
            }
            return BridgeResult(success=False, data=data, error=message, error_type="ViewModeBlocked")

        result = await self.execute_console_command(f"viewmode {resolution.canonical}")
        if not result.success:
            return result

        summary: ConsoleCommandSummary = result.data
        data = {
            **summary.to_dict(),
            "requested_mode": resolution.canonical,
            "view_mode": resolution.canonical,
            "message": f"View mode set to {resolution.canonical}",
        }
        if summary.return_value is False:
            return BridgeResult(success=False, data=data, error=summary.output or "Editor rejected view mode",
                                error_type=RemoteExecutionError.error_type, warning=resolution.warning)
        if summary.output and _VIEWMODE_REJECTED.search(summary.output):
            return BridgeResult(success=False, data=data, error=summary.output,
                                error_type=RemoteExecutionError.error_type, warning=resolution.warning)
        return create_success_response(data, warning=resolution.warning)

    # --- cached queries -----------------------------------------------------

    async def ensure_plugins_enabled(self, plugin_names: Iterable[str], context: Optional[str] = None) -> List[str]:
        """
        Return the names of plugins that are not enabled.

        All uncached names are checked with one script execution. When the
        check cannot run or its output cannot be read, names are treated as
        enabled (``assume_plugins_enabled_on_failure``) so the real operation
        reports the real error.
        """
        names = list(dict.fromkeys(name for name in plugin_names if name))
        if not names:
            return []

        cache = self.caches.plugin_status
        to_check = cache.missing(names)
        if to_check:
            result = await self.execute_python(generate_plugin_check_script(to_check), CommandPriority.LOW)
            payload = result.data.payload if result.success else None
            if isinstance(payload, dict):
                for name, enabled in payload.items():
                    cache.set(name, bool(enabled))
            elif result.success:
                logger.warning(f"Failed to parse plugin status response (context={context}, plugins={to_check})")
            else:
                logger.warning(
                    f"Plugin status check failed (Python disabled?) for {to_check}: {result.error}"
                )

        assume_enabled = self.settings.assume_plugins_enabled_on_failure
        missing = []
        for name in names:
            entry = cache.get_entry(name)
            if entry is None:
                if assume_enabled:
                    cache.set(name, True)
                    continue
                missing.append(name)
            elif not entry.value:
                missing.append(name)

        if missing and context:
            logger.warning(f"Missing required Unreal plugins for {context}: {', '.join(missing)}")
        return missing

    async def get_engine_version(self) -> EngineVersion:
        """Engine version, cached; ``unknown`` 0.0.0 when it cannot be read."""
        cache = self.caches.engine_version
        cached = cache.get(ENGINE_VERSION_KEY)
        if cached is not None:
            return cached

        result = await self.execute_python(ENGINE_VERSION_SCRIPT, CommandPriority.LOW)
        if result.success and isinstance(result.data.payload, dict):
            version = EngineVersion.from_payload(result.data.payload)
        else:
            logger.warning(f"Failed to get engine version via Python: {result.error}")
            version = EngineVersion.unknown()
            if result.error_type == NotConnectedError.error_type:
                return version

        cache.set(ENGINE_VERSION_KEY, version)
        return version

    async def get_feature_flags(self) -> FeatureFlags:
        """Python availability and editor subsystems; never cached."""
        result = await self.execute_python(FEATURE_FLAGS_SCRIPT, CommandPriority.LOW)
        if result.success and isinstance(result.data.payload, dict):
            return FeatureFlags.from_payload(result.data.payload)
        logger.warning(f"Failed to get feature flags via Python: {result.error}")
        return FeatureFlags()

    @staticmethod
    def get_safe_commands() -> Dict[str, str]:
        """Named console commands known to be safe in remote sessions."""
        return dict(SAFE_COMMANDS)

    def get_stats(self) -> dict:
        return {
            "connection": self.connection.get_connection_stats(),
            "queue": {"pending": len(self.queue), "active": self.queue.active},
            "caches": self.caches.get_stats(),
            "scripts": self.executor.get_stats(),
            "requests": self.metrics.snapshot(),
        }


# Global bridge instance
_unreal_bridge: Optional[UnrealBridge] = None


def get_unreal_bridge() -> UnrealBridge:
    """Get or create global Unreal bridge instance."""
    global _unreal_bridge
    if _unreal_bridge is None:
        _unreal_bridge = UnrealBridge()
    return _unreal_bridge
