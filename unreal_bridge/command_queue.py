"""
Priority command queue for throttling work sent to the editor.

The editor is a single external process that can be overwhelmed by bursts of
commands. Every unit of work goes through this queue: lower priority numbers
run first, equal priorities run in arrival order, and at most
``max_concurrency`` units run at once with a short throttle between dispatches.
"""

import asyncio
import heapq
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, List, Optional

from .errors import QueueClearedError

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


class CommandPriority(IntEnum):
    """Priority levels for commands (lower runs first)."""
    CRITICAL = 1     # Lighting builds, asset creation
    HIGH = 3
    MEDIUM = 5       # Actor spawning, material changes
    NORMAL = 7       # Default
    STAT = 8         # Stat commands, spaced out to avoid FindConsoleObject warnings
    LOW = 9          # Status probes
    BACKGROUND = 10


@dataclass
class QueueConfig:
    """Throttle delays in seconds."""
    min_command_delay: float = 0.1
    medium_command_delay: float = 0.2
    max_command_delay: float = 0.5
    stat_command_delay: float = 0.3
    stat_followup_delay: float = 0.15
    jitter: float = 0.05
    max_concurrency: int = 1

    @classmethod
    def unthrottled(cls, max_concurrency: int = 1) -> "QueueConfig":
        return cls(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, max_concurrency)


@dataclass(order=True)
class QueueEntry:
    """One unit of queued work; ordered by (priority, sequence)."""
    priority: int
    sequence: int
    work: Work = field(compare=False)
    enqueued_at: float = field(compare=False)
    completion: asyncio.Future = field(compare=False, repr=False)
    label: Optional[str] = field(default=None, compare=False)


class CommandQueue:
    """Priority-ordered, throttled dispatcher for asynchronous work."""

    def __init__(self, config: Optional[QueueConfig] = None, clock: Optional[Callable[[], float]] = None):
        self.config = config or QueueConfig()
        self._clock = clock or time.monotonic
        self._heap: List[QueueEntry] = []
        self._sequence = itertools.count()
        self._active = 0
        self._dispatch_scheduled = False
        self._last_dispatch: Optional[float] = None
        self._last_stat_dispatch: Optional[float] = None
        self._processing_task: Optional[asyncio.Task] = None
        self._running: set = set()

    def submit(self, work: Work, priority: int = CommandPriority.NORMAL, label: Optional[str] = None) -> asyncio.Future:
        """
        Queue a unit of work.

        Args:
            work: Zero-argument coroutine function to run
            priority: Lower values run first
            label: Optional description for logs

        Returns:
            Future settled with the work's result or exception
        """
        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            priority=int(priority),
            sequence=next(self._sequence),
            work=work,
            enqueued_at=self._clock(),
            completion=loop.create_future(),
            label=label,
        )
        heapq.heappush(self._heap, entry)
        logger.debug(f"Queued {label or 'command'} (priority {entry.priority}, depth {len(self._heap)})")
        self._schedule_dispatch(loop)
        return entry.completion

    async def enqueue(self, work: Work, priority: int = CommandPriority.NORMAL, label: Optional[str] = None) -> Any:
        """Queue a unit of work and wait for its result."""
        return await self.submit(work, priority, label)

    def _schedule_dispatch(self, loop: asyncio.AbstractEventLoop) -> None:
        # Deferred so entries submitted in the same loop turn are ordered first
        if not self._dispatch_scheduled:
            self._dispatch_scheduled = True
            loop.call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_scheduled = False
        while self._heap and self._active < self.config.max_concurrency:
            entry = heapq.heappop(self._heap)
            if entry.completion.done():
                # Caller cancelled while waiting
                continue
            self._active += 1
            task = asyncio.ensure_future(self._run(entry))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    def _calculate_delay(self, priority: int, now: float) -> float:
        """Minimum spacing before dispatching work of ``priority``."""
        config = self.config
        if priority <= CommandPriority.HIGH:
            return config.max_command_delay
        if priority <= 6:
            return config.medium_command_delay
        if priority == CommandPriority.STAT:
            last_stat = self._last_stat_dispatch
            if last_stat is not None and now - last_stat < config.stat_command_delay:
                return config.stat_command_delay
            return config.stat_followup_delay
        return config.min_command_delay + random.random() * config.jitter

    async def _throttle(self, entry: QueueEntry) -> None:
        now = self._clock()
        required = self._calculate_delay(entry.priority, now)
        if self._last_dispatch is not None:
            elapsed = now - self._last_dispatch
            if elapsed < required:
                await asyncio.sleep(required - elapsed)

    def _mark_settled(self, entry: QueueEntry) -> None:
        # Spacing is measured from the end of the previous command
        self._last_dispatch = self._clock()
        if entry.priority == CommandPriority.STAT:
            self._last_stat_dispatch = self._last_dispatch

    async def _run(self, entry: QueueEntry) -> None:
        try:
            await self._throttle(entry)
            if entry.completion.done():
                return
            try:
                try:
                    result = await entry.work()
                finally:
                    self._mark_settled(entry)
            except asyncio.CancelledError:
                if not entry.completion.done():
                    entry.completion.cancel()
                raise
            except Exception as e:
                logger.debug(f"Queued {entry.label or 'command'} failed: {e}")
                if not entry.completion.done():
                    entry.completion.set_exception(e)
            else:
                if not entry.completion.done():
                    entry.completion.set_result(result)
        finally:
            self._active -= 1
            if self._heap:
                self._schedule_dispatch(asyncio.get_running_loop())

    def start_periodic_processing(self, interval: float = 1.0) -> None:
        """Start a backstop tick that dispatches stranded entries."""
        if self._processing_task is not None and not self._processing_task.done():
            return
        self._processing_task = asyncio.create_task(self._periodic(interval))

    async def _periodic(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._heap and self._active < self.config.max_concurrency:
                self._dispatch()

    async def stop_periodic_processing(self) -> None:
        task = self._processing_task
        self._processing_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def periodic_processing(self) -> bool:
        return self._processing_task is not None and not self._processing_task.done()

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def active(self) -> int:
        return self._active

    @property
    def processing(self) -> bool:
        return self._active > 0

    def clear(self, reason: str = "Queue cleared") -> int:
        """Reject every pending entry; running work is left alone."""
        entries, self._heap = self._heap, []
        for entry in entries:
            if not entry.completion.done():
                entry.completion.set_exception(QueueClearedError(reason))
        return len(entries)


def priority_for_command(command: str) -> CommandPriority:
    """Derive a queue priority from a console command."""
    if "BuildLighting" in command or "BuildPaths" in command:
        return CommandPriority.CRITICAL
    if "summon" in command or "spawn" in command:
        return CommandPriority.MEDIUM
    stripped = command.strip().lower()
    if stripped.startswith("stat"):
        return CommandPriority.STAT
    if stripped.startswith("show"):
        return CommandPriority.LOW
    return CommandPriority.NORMAL


_HEAVY_SCRIPT_MARKERS = ("build_light_maps", "editorbuildlibrary", "buildlighting", "lightingbuildquality")


def priority_for_script(script: str) -> CommandPriority:
    """Derive a queue priority from embedded-script text."""
    lowered = script.lower()
    if any(marker in lowered for marker in _HEAVY_SCRIPT_MARKERS):
        return CommandPriority.CRITICAL
    return CommandPriority.MEDIUM
