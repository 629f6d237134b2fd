"""Bridge to a running Unreal Editor over the Remote Control API."""

from .bridge import (
    ConsoleCommandSummary,
    EngineVersion,
    FeatureFlags,
    UnrealBridge,
    get_unreal_bridge,
)
from .cache import BridgeCaches, TTLCache
from .command_queue import CommandPriority, CommandQueue, QueueConfig
from .config import Settings, get_settings
from .connection import Command, ConnectionManager, ConnectionState
from .errors import (
    BridgeError,
    BridgeResult,
    CommandBlockedError,
    EngineConnectionError,
    EngineConnectionRefused,
    EngineConnectionTimeout,
    InvalidCommandError,
    NotConnectedError,
    QueueClearedError,
    RemoteExecutionError,
    RequestTimeoutError,
    ResultParseError,
    UnknownViewModeError,
)
from .health import HealthMonitor, RequestMetrics
from .result_codec import ScriptResult, decode
from .script_executor import ScriptExecutor, ScriptTier
from .scripts import ScriptMode, ScriptRequest

__version__ = "0.1.0"
