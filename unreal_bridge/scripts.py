"""
Embedded-script requests and the probe scripts the bridge runs itself.

A ``ScriptRequest`` is the single input type of the script executor: the raw
Python text plus the execution mode the editor should use for it.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .result_codec import RESULT_MARKER


class ScriptMode(Enum):
    """How the editor should execute a script."""
    AUTO = "auto"
    STATEMENT = "ExecuteStatement"
    FILE = "ExecuteFile"


def needs_file_mode(text: str) -> bool:
    """Multi-line scripts and statement lists must run as a file."""
    return "\n" in text or "\r" in text or ";" in text


@dataclass(frozen=True)
class ScriptRequest:
    """Python text to run inside the editor."""
    text: str
    mode: ScriptMode = ScriptMode.AUTO

    @classmethod
    def from_text(cls, text: str) -> "ScriptRequest":
        return cls(text=text, mode=ScriptMode.AUTO)

    @property
    def execution_mode(self) -> ScriptMode:
        """Resolved mode; AUTO becomes FILE or STATEMENT from the text."""
        if self.mode is not ScriptMode.AUTO:
            return self.mode
        return ScriptMode.FILE if needs_file_mode(self.text) else ScriptMode.STATEMENT

    @property
    def is_multiline(self) -> bool:
        return self.execution_mode is ScriptMode.FILE


def _marker_print(expression: str) -> str:
    return f"print('{RESULT_MARKER}' + json.dumps({expression}))"


_STATUS_PRINT = _marker_print("status")


def generate_plugin_check_script(plugin_names: Iterable[str]) -> str:
    """
    Build one script that reports the enabled state of every plugin name.

    If the editor exposes neither the plugin manager nor the plugins subsystem
    to Python, every plugin is reported as enabled so the real operation fails
    with the real error.
    """
    names = json.dumps(list(plugin_names))
    return f"""
import unreal
import json

plugins = {names}
status = {{}}

def get_plugin_manager():
    try:
        return unreal.PluginManager.get()
    except Exception:
        return None

def get_plugins_subsystem():
    try:
        return unreal.get_editor_subsystem(unreal.PluginsEditorSubsystem)
    except Exception:
        pass
    try:
        return unreal.PluginsSubsystem()
    except Exception:
        return None

pm = get_plugin_manager()
ps = get_plugins_subsystem()
no_api_available = pm is None and ps is None

def is_enabled(plugin_name):
    if no_api_available:
        return True
    if pm:
        try:
            if pm.is_plugin_enabled(plugin_name):
                return True
        except Exception:
            try:
                plugin = pm.find_plugin(plugin_name)
                if plugin and plugin.is_enabled():
                    return True
            except Exception:
                pass
    if ps:
        try:
            return bool(ps.is_plugin_enabled(plugin_name))
        except Exception:
            try:
                plugin = ps.find_plugin(plugin_name)
                if plugin and plugin.is_enabled():
                    return True
            except Exception:
                pass
    return True

for plugin_name in plugins:
    try:
        status[plugin_name] = bool(is_enabled(plugin_name))
    except Exception:
        status[plugin_name] = True

{_STATUS_PRINT}
""".strip()


_VERSION_PRINT = _marker_print("{'version': ver, 'major': major, 'minor': minor, 'patch': patch}")

ENGINE_VERSION_SCRIPT = f"""
import unreal, json, re
ver = str(unreal.SystemLibrary.get_engine_version())
m = re.match(r'^(\\d+)\\.(\\d+)\\.(\\d+)', ver)
major = int(m.group(1)) if m else 0
minor = int(m.group(2)) if m else 0
patch = int(m.group(3)) if m else 0
{_VERSION_PRINT}
""".strip()


_FLAGS_PRINT = _marker_print("flags")

FEATURE_FLAGS_SCRIPT = f"""
import unreal, json
flags = {{}}
try:
    _ = unreal.PythonScriptLibrary
    flags['pythonEnabled'] = True
except Exception:
    flags['pythonEnabled'] = False
try:
    flags['unrealEditor'] = bool(unreal.get_editor_subsystem(unreal.UnrealEditorSubsystem))
except Exception:
    flags['unrealEditor'] = False
try:
    flags['levelEditor'] = bool(unreal.get_editor_subsystem(unreal.LevelEditorSubsystem))
except Exception:
    flags['levelEditor'] = False
try:
    flags['editorActor'] = bool(unreal.get_editor_subsystem(unreal.EditorActorSubsystem))
except Exception:
    flags['editorActor'] = False
{_FLAGS_PRINT}
""".strip()

# Minimal probe used when console commands are unavailable
PING_SCRIPT = "import json; " + _marker_print("{'ok': True}")
