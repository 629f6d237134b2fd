"""
Safety filter for console commands and view modes.

This module classifies console command strings and view-mode names before
anything is sent to the editor. All functions are pure: they never touch the
network, so a blocked command can be rejected before any I/O happens.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .errors import CommandBlockedError, InvalidCommandError, UnknownViewModeError

logger = logging.getLogger(__name__)


# Console commands verified as safe shortcuts for common operations
SAFE_COMMANDS: Dict[str, str] = {
    # Health check, no side effects
    "HealthCheck": "echo Unreal Bridge Health Check",

    # Performance monitoring
    "ShowFPS": "stat unit",
    "ShowMemory": "stat memory",
    "ShowGame": "stat game",
    "ShowRendering": "stat scenerendering",
    "ClearStats": "stat none",

    # View modes
    "ViewLit": "viewmode lit",
    "ViewUnlit": "viewmode unlit",
    "ViewWireframe": "viewmode wireframe",
    "ViewDetailLighting": "viewmode detaillighting",
    "ViewLightingOnly": "viewmode lightingonly",

    # Show flags
    "ShowBounds": "show bounds",
    "ShowCollision": "show collision",
    "ShowNavigation": "show navigation",
    "ShowFog": "show fog",
    "ShowGrid": "show grid",

    # Play-in-editor
    "PlayInEditor": "play",
    "StopPlay": "stop",
    "PausePlay": "pause",

    # Time control
    "SlowMotion": "slomo 0.5",
    "NormalSpeed": "slomo 1",
    "FastForward": "slomo 2",

    # Camera
    "CameraSpeed1": "camspeed 1",
    "CameraSpeed4": "camspeed 4",
    "CameraSpeed8": "camspeed 8",

    # Rendering quality
    "LowQuality": "sg.ViewDistanceQuality 0",
    "MediumQuality": "sg.ViewDistanceQuality 1",
    "HighQuality": "sg.ViewDistanceQuality 2",
    "EpicQuality": "sg.ViewDistanceQuality 3",
}

# Known to crash the editor (access violations without nav/landscape setup)
CRASH_COMMANDS = (
    "buildpaths",
    "rebuildnavigation",
    "buildhierarchicallod",
    "buildlandscapeinfo",
    "rebuildselectednavigation",
)

# Substrings that terminate the process or destroy state
DANGEROUS_COMMANDS = (
    "quit", "exit", "delete", "destroy", "kill", "crash",
    "viewmode visualizebuffer basecolor",
    "viewmode visualizebuffer worldnormal",
    "r.gpucrash",
)

DANGEROUS_PATTERNS = (
    "quit", "exit", "r.gpucrash", "debug crash",
    "viewmode visualizebuffer",
)

FORBIDDEN_TOKENS = (
    "rm ", "rm-", "del ", "format ", "shutdown", "reboot",
    "rmdir", "mklink", "copy ", "move ", 'start "', "system(",
    "import os", "import subprocess", "subprocess.", "os.system",
    "exec(", "eval(", "__import__", "import sys", "import importlib",
    "with open", "open(",
)

CHAINING_OPERATORS = ("&&", "||")

# Commands that parse but do nothing useful; logged, not blocked
_LIKELY_INVALID = re.compile(r"^\d+$|^invalid_command|^this_is_not_a_valid", re.IGNORECASE)


class CommandVerdict(Enum):
    """Classification of a console command."""
    ALLOWED = "allowed"
    EMPTY = "empty"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class SafetyVerdict:
    """Result of checking a console command."""
    verdict: CommandVerdict
    command: str
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.verdict is not CommandVerdict.BLOCKED


def _normalize(command: str) -> str:
    return command.strip().lower()


def is_crash_command(command: str) -> bool:
    """Check if a command is one of the known crash triggers."""
    cmd_lower = _normalize(command)
    return any(cmd_lower == crash or cmd_lower.startswith(crash + " ") for crash in CRASH_COMMANDS)


def is_dangerous_command(command: str) -> bool:
    """Check if a command contains a dangerous pattern."""
    cmd_lower = _normalize(command)
    return any(pattern in cmd_lower for pattern in DANGEROUS_PATTERNS)


def is_denied_command(command: str) -> bool:
    """Check a command against the full deny-list of destructive commands."""
    cmd_lower = _normalize(command)
    return any(denied in cmd_lower for denied in DANGEROUS_COMMANDS)


def contains_forbidden_token(command: str) -> bool:
    """Check if a command contains a forbidden shell or scripting token."""
    cmd_lower = _normalize(command)
    return any(token in cmd_lower for token in FORBIDDEN_TOKENS)


def is_chained_command(command: str) -> bool:
    return any(op in command for op in CHAINING_OPERATORS)


def is_multiline(command: str) -> bool:
    stripped = command.strip()
    return "\n" in stripped or "\r" in stripped


def is_python_console_command(command: str) -> bool:
    cmd_lower = _normalize(command)
    return cmd_lower == "py" or cmd_lower.startswith("py ")


def looks_invalid(command: str) -> bool:
    return bool(_LIKELY_INVALID.search(command.strip()))


def check_console_command(command: str, allow_python: bool = False) -> SafetyVerdict:
    """
    Classify a console command without executing it.

    Args:
        command: Raw console command text
        allow_python: Permit ``py`` commands (used by the script fallback tier)

    Returns:
        SafetyVerdict describing whether the command may be sent
    """
    trimmed = command.strip()
    if not trimmed:
        return SafetyVerdict(CommandVerdict.EMPTY, trimmed)

    def blocked(reason: str) -> SafetyVerdict:
        return SafetyVerdict(CommandVerdict.BLOCKED, trimmed, reason)

    if is_multiline(trimmed):
        return blocked("Multi-line console commands are not allowed. Send one command per call.")

    if not allow_python and is_python_console_command(trimmed):
        return blocked("Python console commands are blocked from external calls for safety.")

    if is_crash_command(trimmed):
        return blocked("This command can cause Unreal Engine to crash. Use the Python API alternatives instead.")

    if is_denied_command(trimmed) or is_dangerous_command(trimmed):
        return blocked("Dangerous command blocked for safety.")

    if is_chained_command(trimmed):
        return blocked("Command chaining with && or || is blocked for safety.")

    if contains_forbidden_token(trimmed):
        return blocked("Command contains an unsafe token.")

    return SafetyVerdict(CommandVerdict.ALLOWED, trimmed)


def validate_console_command(command: str, allow_python: bool = False) -> SafetyVerdict:
    """
    Validate a console command, raising when it must not be sent.

    Raises:
        InvalidCommandError: command is not a string
        CommandBlockedError: command matched the deny-list
    """
    if not isinstance(command, str):
        raise InvalidCommandError("Invalid command: must be a non-empty string")

    verdict = check_console_command(command, allow_python=allow_python)
    if verdict.verdict is CommandVerdict.BLOCKED:
        logger.warning(f"BLOCKED console command: {verdict.command} ({verdict.reason})")
        raise CommandBlockedError(verdict.command, verdict.reason)

    if verdict.verdict is CommandVerdict.ALLOWED and looks_invalid(verdict.command):
        logger.warning(f"Command appears invalid: {verdict.command}")

    return verdict


def get_safe_command(name: str) -> Optional[str]:
    """Get a safe command by name."""
    return SAFE_COMMANDS.get(name)


def get_safe_command_names() -> List[str]:
    return list(SAFE_COMMANDS)


# --- View modes ---------------------------------------------------------

# Modes that render through visualizeBuffer and can destabilize remote sessions
UNSAFE_VIEWMODES = (
    "BaseColor", "WorldNormal", "Metallic", "Specular", "Roughness",
    "SubsurfaceColor", "Opacity",
    "LightComplexity", "LightmapDensity",
    "StationaryLightOverlap", "CollisionPawn", "CollisionVisibility",
)

HARD_BLOCKED_VIEWMODES = frozenset({
    "BaseColor", "WorldNormal", "Metallic", "Specular", "Roughness",
    "SubsurfaceColor", "Opacity",
})

# Normalized key -> canonical mode
VIEWMODE_ALIASES: Dict[str, str] = {
    "lit": "Lit",
    "unlit": "Unlit",
    "wireframe": "Wireframe",
    "brushwireframe": "BrushWireframe",
    "detaillighting": "DetailLighting",
    "litdetail": "DetailLighting",
    "lightingonly": "LightingOnly",
    "lightonly": "LightingOnly",
    "litonly": "LightingOnly",
    "lightcomplexity": "LightComplexity",
    "shadercomplexity": "ShaderComplexity",
    "lightmapdensity": "LightmapDensity",
    "stationarylightoverlap": "StationaryLightOverlap",
    "reflectionoverride": "ReflectionOverride",
    "texeldensity": "TexelDensity",
    "vertexcolor": "VertexColor",
    "basecolor": "BaseColor",
    "worldnormal": "WorldNormal",
    "metallic": "Metallic",
    "specular": "Specular",
    "roughness": "Roughness",
    "subsurfacecolor": "SubsurfaceColor",
    "opacity": "Opacity",
    "collisionpawn": "CollisionPawn",
    "collisionvisibility": "CollisionVisibility",
}

VIEWMODE_ALTERNATIVES: Dict[str, str] = {
    "BaseColor": "Lit",
    "WorldNormal": "Lit",
    "Metallic": "Lit",
    "Specular": "Lit",
    "Roughness": "Lit",
    "SubsurfaceColor": "Lit",
    "Opacity": "Lit",
    "LightComplexity": "LightingOnly",
    "ShaderComplexity": "Wireframe",
    "CollisionPawn": "Wireframe",
    "CollisionVisibility": "Wireframe",
}


class ViewModeStatus(Enum):
    """Safety classification of a canonical view mode."""
    SAFE = "safe"
    UNSAFE = "unsafe"      # executed, flagged with a warning
    BLOCKED = "blocked"    # always substituted with a safe alternative


@dataclass(frozen=True)
class ViewModeResolution:
    """Outcome of resolving a free-form view-mode name."""
    requested: str
    canonical: str
    status: ViewModeStatus
    alternative: Optional[str] = None
    warning: Optional[str] = None

    @property
    def target(self) -> str:
        """Mode that should actually be applied."""
        if self.status is ViewModeStatus.BLOCKED and self.alternative:
            return self.alternative
        return self.canonical

    @property
    def substituted(self) -> bool:
        return self.target != self.canonical


def normalize_view_mode_key(mode: str) -> str:
    return re.sub(r"[\s_\-]+", "", mode.strip().lower())


def get_accepted_modes() -> List[str]:
    """Sorted list of canonical view-mode names."""
    return sorted(set(VIEWMODE_ALIASES.values()))


def get_safe_alternative(mode: str) -> str:
    return VIEWMODE_ALTERNATIVES.get(mode, "Lit")


def is_hard_blocked(mode: str) -> bool:
    return mode in HARD_BLOCKED_VIEWMODES


def is_unsafe_view_mode(mode: str) -> bool:
    return mode in UNSAFE_VIEWMODES


def resolve_view_mode(mode: str) -> ViewModeResolution:
    """
    Resolve a view-mode name (case, whitespace and separator insensitive).

    Raises:
        UnknownViewModeError: the name is empty or not in the alias table
    """
    accepted = get_accepted_modes()

    if not isinstance(mode, str):
        raise UnknownViewModeError("View mode must be provided as a string", accepted)

    key = normalize_view_mode_key(mode)
    if not key:
        raise UnknownViewModeError("View mode cannot be empty", accepted)

    canonical = VIEWMODE_ALIASES.get(key)
    if canonical is None:
        raise UnknownViewModeError(f"Unknown view mode '{mode}'", accepted)

    if is_hard_blocked(canonical):
        alternative = get_safe_alternative(canonical)
        return ViewModeResolution(
            requested=mode,
            canonical=canonical,
            status=ViewModeStatus.BLOCKED,
            alternative=alternative,
            warning=f"View mode '{canonical}' is unsafe in remote sessions. Use '{alternative}' instead."
        )

    if is_unsafe_view_mode(canonical):
        return ViewModeResolution(
            requested=mode,
            canonical=canonical,
            status=ViewModeStatus.UNSAFE,
            alternative=get_safe_alternative(canonical),
            warning=f"View mode '{canonical}' may be unstable on some engine versions."
        )

    return ViewModeResolution(requested=mode, canonical=canonical, status=ViewModeStatus.SAFE)
