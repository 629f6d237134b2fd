"""
Fallback ladder for running Python inside the editor.

Editors differ in what they expose: newer builds accept
``ExecutePythonCommandEx``, older ones only ``ExecutePythonCommand``, and some
only the ``py`` console command. The executor walks these tiers in order and
stops at the first one that answers.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from .connection import PYTHON_SCRIPT_LIBRARY, Command, ConnectionManager
from .errors import (
    CommandBlockedError,
    EngineConnectionError,
    RemoteExecutionError,
    RequestTimeoutError,
)
from .result_codec import ScriptResult, decode
from .safety import validate_console_command
from .scripts import ScriptMode, ScriptRequest, needs_file_mode

logger = logging.getLogger(__name__)

# Errors that move execution to the next tier; NotConnectedError never does
ESCALATING_ERRORS = (EngineConnectionError, RequestTimeoutError, RemoteExecutionError)

LONG_LINE_LENGTH = 200

_LEADING_IMPORT = re.compile(r"^\s*import\s+unreal\s*;?\s*", re.MULTILINE)
_LINE_SPLIT = re.compile(r"[;\r\n]")


class ScriptTier(Enum):
    """Execution paths, in the order they are tried."""
    EXECUTE_EX = "ExecutePythonCommandEx"
    EXECUTE = "ExecutePythonCommand"
    CONSOLE = "console py"


def escape_for_exec(text: str) -> str:
    """Escape a script so it fits inside ``exec("...")`` on one console line."""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "")
    )


def split_script_lines(text: str) -> List[str]:
    """Statements for line-by-line execution; the leading ``import unreal`` and comments are dropped."""
    body = _LEADING_IMPORT.sub("", text, count=1)
    statements = (part.strip() for part in _LINE_SPLIT.split(body))
    return [s for s in statements if s and not s.startswith("#")]


class ScriptExecutor:
    """Runs a ScriptRequest through the editor's Python entry points."""

    def __init__(
        self,
        connection: ConnectionManager,
        line_delay: float = 0.03,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        self.connection = connection
        self.line_delay = line_delay
        self._sleep = sleep or asyncio.sleep
        self.last_tier: Optional[ScriptTier] = None
        self.tier_counts = {tier: 0 for tier in ScriptTier}

    async def execute(self, request: Union[ScriptRequest, str]) -> Any:
        """
        Run a script and return the raw editor response.

        Raises:
            NotConnectedError: the bridge is not connected (no tier is tried)
            RemoteExecutionError: every tier failed; details list each failure
        """
        if isinstance(request, str):
            request = ScriptRequest.from_text(request)

        tiers = (
            (ScriptTier.EXECUTE_EX, self._execute_ex),
            (ScriptTier.EXECUTE, self._execute),
            (ScriptTier.CONSOLE, self._execute_console),
        )
        failures = []
        for tier, runner in tiers:
            if tier is ScriptTier.CONSOLE:
                logger.warning("PythonScriptLibrary not available, falling back to console `py` command")
            try:
                response = await runner(request)
            except ESCALATING_ERRORS + (CommandBlockedError,) as e:
                logger.debug(f"{tier.value} failed: {e}")
                failures.append(f"{tier.value}: {e}")
                continue
            self.last_tier = tier
            self.tier_counts[tier] += 1
            return response

        raise RemoteExecutionError(
            "All Python execution paths failed",
            details="; ".join(failures)
        )

    async def run(self, request: Union[ScriptRequest, str]) -> ScriptResult:
        """Execute a script and decode its ``RESULT:`` output."""
        return decode(await self.execute(request))

    async def _execute_ex(self, request: ScriptRequest) -> Any:
        mode = request.execution_mode
        return await self.connection.call(Command(
            object_path=PYTHON_SCRIPT_LIBRARY,
            function_name="ExecutePythonCommandEx",
            parameters={
                "PythonCommand": request.text,
                "ExecutionMode": mode.value,
                "FileExecutionScope": "Private",
            },
        ))

    async def _execute(self, request: ScriptRequest) -> Any:
        return await self.connection.call(Command(
            object_path=PYTHON_SCRIPT_LIBRARY,
            function_name="ExecutePythonCommand",
            parameters={"Command": request.text},
        ))

    async def _execute_console(self, request: ScriptRequest) -> Any:
        text = request.text
        if not needs_file_mode(text) and request.mode is not ScriptMode.FILE:
            return await self.send_console(f"py {text.strip()}")

        try:
            return await self.send_console(f'py exec("{escape_for_exec(text)}")')
        except ESCALATING_ERRORS + (CommandBlockedError,) as e:
            logger.debug(f"py exec() form failed ({e}); running script line by line")

        return await self._execute_line_by_line(text)

    async def _execute_line_by_line(self, text: str) -> List[Any]:
        try:
            await self.send_console("py import unreal")
        except ESCALATING_ERRORS as e:
            logger.debug(f"Initial 'py import unreal' failed: {e}")

        responses = []
        for line in split_script_lines(text):
            if len(line) > LONG_LINE_LENGTH:
                line = 'exec("""' + line.replace('"', '\\"') + '""")'
            responses.append(await self.send_console(f"py {line}"))
            await self._sleep(self.line_delay)
        return responses

    async def send_console(self, command: str) -> Any:
        """Send one ``py`` console command, checked but not queued."""
        verdict = validate_console_command(command, allow_python=True)
        return await self.connection.call(Command.console(verdict.command))

    def get_stats(self) -> dict:
        return {
            "last_tier": self.last_tier.value if self.last_tier else None,
            "tier_counts": {tier.value: count for tier, count in self.tier_counts.items()},
        }
