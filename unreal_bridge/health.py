"""
Health monitoring for the Unreal bridge.

``RequestMetrics`` records the outcome and latency of every public bridge
operation. ``HealthMonitor`` pings the editor periodically while connected and
pauses itself when no ping has succeeded for a while, so a closed editor does
not keep the bridge busy.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional

from .errors import is_transient_error
from .safety import get_safe_command
from .scripts import PING_SCRIPT

if TYPE_CHECKING:
    from .bridge import UnrealBridge
    from .errors import BridgeResult

logger = logging.getLogger(__name__)

RESPONSE_WINDOW = 100
MAX_RECENT_ERRORS = 20


class RequestMetrics:
    """Success/failure counters and a rolling average of response times."""

    def __init__(self, window: int = RESPONSE_WINDOW, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self.started_at = self._clock()
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.response_times: Deque[float] = deque(maxlen=window)
        self.recent_errors: Deque[Dict[str, Any]] = deque(maxlen=MAX_RECENT_ERRORS)

    def record(self, duration: float, success: bool) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        self.response_times.append(duration)

    def record_error(self, scope: str, result: "BridgeResult") -> None:
        retriable = result.exception is not None and is_transient_error(result.exception)
        self.recent_errors.append({
            "time": datetime.now(timezone.utc).isoformat(),
            "scope": scope,
            "type": result.error_type,
            "message": result.error,
            "retriable": retriable,
        })

    @property
    def average_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    @property
    def success_rate(self) -> Optional[float]:
        if self.total_requests == 0:
            return None
        return self.successful_requests / self.total_requests * 100

    def snapshot(self) -> dict:
        success_rate = self.success_rate
        return {
            "uptime": int(self._clock() - self.started_at),
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": f"{success_rate:.2f}%" if success_rate is not None else "N/A",
            "average_response_time_ms": round(self.average_response_time * 1000),
            "recent_errors": list(self.recent_errors)[-5:],
        }


class HealthMonitor:
    """
    Background editor ping.

    Features:
    - Safe echo command, falling back to a minimal Python ping
    - Runs only while the bridge is connected
    - Pauses after ``pause_after`` seconds without a successful ping
    - Started and stopped by UnrealBridge on connect and disconnect
    """

    def __init__(
        self,
        bridge: "UnrealBridge",
        check_interval: Optional[float] = None,
        pause_after: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the health monitor.

        Args:
            bridge: Bridge to ping
            check_interval: Seconds between pings (defaults to settings)
            pause_after: Seconds without success before pausing (defaults to settings)
            clock: Monotonic clock
        """
        self.bridge = bridge
        self.check_interval = check_interval if check_interval is not None else bridge.settings.health_check_interval
        self.pause_after = pause_after if pause_after is not None else bridge.settings.health_pause_after
        self._clock = clock or time.monotonic

        self._task: Optional[asyncio.Task] = None
        self.status = "disconnected"
        self.last_health_check: Optional[datetime] = None
        self.last_success_at: Optional[float] = None
        self.consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def ping(self) -> bool:
        """Probe the editor once; never raises."""
        if not self.bridge.is_connected:
            self.status = "disconnected"
            return False

        result = await self.bridge.execute_console_command(get_safe_command("HealthCheck"))
        if not result.success:
            console_error = result.error
            result = await self.bridge.execute_python(PING_SCRIPT)
            if not result.success:
                self.status = "error"
                self.last_health_check = datetime.now(timezone.utc)
                self.consecutive_failures += 1
                logger.debug(f"Health check failed (console: {console_error}; python: {result.error})")
                return False

        self.status = "connected"
        self.last_health_check = datetime.now(timezone.utc)
        self.last_success_at = self._clock()
        self.consecutive_failures = 0
        return True

    def _should_pause(self) -> bool:
        return self.last_success_at is None or self._clock() - self.last_success_at > self.pause_after

    async def _monitor_loop(self) -> None:
        logger.debug("Health checks started")
        while True:
            await asyncio.sleep(self.check_interval)
            if self.bridge.is_connected:
                await self.ping()
            if self._should_pause():
                logger.info(f"Health checks paused after {self.pause_after:.0f}s without a successful response")
                return

    def start(self) -> None:
        """Start periodic pings; a no-op while already running."""
        if self.running:
            return
        self.last_success_at = self._clock()
        self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def snapshot(self) -> dict:
        """Health report: connection, request metrics and editor details when connected."""
        connection = self.bridge.connection
        report: Dict[str, Any] = {
            "status": self.status if self.bridge.is_connected else "disconnected",
            "performance": self.bridge.metrics.snapshot(),
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "health_checks_running": self.running,
            "unreal_connection": {
                "status": "connected" if self.bridge.is_connected else "disconnected",
                **self.bridge.settings.get_connection_config(),
                "engine_version": {},
                "features": {"rc_http_reachable": self.bridge.is_connected},
            },
            "connection_stats": connection.get_connection_stats(),
            "error_counts": summarize_errors(list(self.bridge.metrics.recent_errors)),
        }

        if self.bridge.is_connected:
            version = await self.bridge.get_engine_version()
            flags = await self.bridge.get_feature_flags()
            unreal = report["unreal_connection"]
            unreal["engine_version"] = version.to_dict()
            unreal["features"].update(flags.to_dict())

        return report


def summarize_errors(errors: List[Dict[str, Any]]) -> Dict[str, int]:
    """Count recent errors by type."""
    counts: Dict[str, int] = {}
    for error in errors:
        error_type = error.get("type") or "unknown"
        counts[error_type] = counts.get(error_type, 0) + 1
    return counts
