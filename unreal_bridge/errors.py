"""
Error taxonomy and result helpers for the Unreal bridge.

Every failure the bridge can report has a dedicated exception type carrying a
machine-readable ``error_type``. Public entry points convert these into
``BridgeResult`` objects so callers never see a raw exception for routine
failures (editor not running, command vetoed, script raised).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base exception for bridge errors."""

    error_type = "BridgeError"

    def __init__(self, message: str, error_type: Optional[str] = None, details: Optional[str] = None):
        self.message = message
        if error_type:
            self.error_type = error_type
        self.details = details
        super().__init__(message)


class NotConnectedError(BridgeError):
    """Raised when an operation needs the editor but the bridge is disconnected."""

    error_type = "NotConnected"

    def __init__(self, message: str = "Not connected to Unreal Engine", details: Optional[str] = None):
        super().__init__(message, details=details)


class EngineConnectionError(BridgeError):
    """Transport-level failure while talking to the editor."""

    error_type = "ConnectionError"


class EngineConnectionTimeout(EngineConnectionError):
    """No open event arrived within the connect timeout."""

    error_type = "ConnectionTimeout"


class EngineConnectionRefused(EngineConnectionError):
    """The editor is not listening (Remote Control disabled or editor closed)."""

    error_type = "ConnectionRefused"


class CommandBlockedError(BridgeError):
    """A console command was vetoed by the safety filter. Never sent, never retried."""

    error_type = "CommandBlocked"

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Command '{command}' blocked: {reason}", details=reason)


class InvalidCommandError(BridgeError):
    """The command was not a usable string."""

    error_type = "InvalidCommand"


class UnknownViewModeError(BridgeError):
    """The requested view mode does not resolve to a canonical mode."""

    error_type = "UnknownMode"

    def __init__(self, message: str, accepted_modes: list):
        self.accepted_modes = list(accepted_modes)
        super().__init__(message, details=", ".join(self.accepted_modes))


class RemoteExecutionError(BridgeError):
    """The editor received the call but reported a failure."""

    error_type = "RemoteExecutionError"

    def __init__(self, message: str, details: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, details=details)


class ResultParseError(BridgeError):
    """Script output carried no decodable result payload."""

    error_type = "ResultParseError"


class RequestTimeoutError(BridgeError):
    """An HTTP round trip exceeded its allotted time on every attempt."""

    error_type = "RequestTimeout"

    def __init__(self, message: str, timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__(message)


class QueueClearedError(BridgeError):
    """A queued unit of work was dropped before it ran."""

    error_type = "QueueCleared"


_TRANSIENT_MARKERS = ("timeout", "connection", "econnrefused")


def is_transient_error(exc: BaseException) -> bool:
    """Return True for connection errors worth another connect attempt."""
    if isinstance(exc, (EngineConnectionError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (CommandBlockedError, NotConnectedError)):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@dataclass
class BridgeResult:
    """Structured outcome of a public bridge operation."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    warning: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def raise_for_error(self) -> "BridgeResult":
        """Re-raise the originating exception of a failed result."""
        if self.success:
            return self
        if self.exception is not None:
            raise self.exception
        raise BridgeError(self.error or "Unknown bridge error", error_type=self.error_type)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
            result["error_type"] = self.error_type
        if self.warning is not None:
            result["warning"] = self.warning
        return result


def create_error_response(
    error: BaseException,
    data: Any = None,
    log_level: int = logging.WARNING
) -> BridgeResult:
    """
    Create a standardized failure result from an exception.

    Args:
        error: Exception that ended the operation
        data: Optional partial data to return alongside the failure
        log_level: Level used to log the failure

    Returns:
        BridgeResult with success=False
    """
    if isinstance(error, BridgeError):
        message = error.message
        error_type = error.error_type
    else:
        message = str(error) or error.__class__.__name__
        error_type = error.__class__.__name__

    logger.log(log_level, f"Bridge error [{error_type}]: {message}")
    if isinstance(error, BridgeError) and error.details:
        logger.debug(f"Error details: {error.details}")

    return BridgeResult(
        success=False,
        data=data,
        error=message,
        error_type=error_type,
        exception=error
    )


def create_success_response(data: Any = None, warning: Optional[str] = None) -> BridgeResult:
    """Create a standardized success result."""
    return BridgeResult(success=True, data=data, warning=warning)
