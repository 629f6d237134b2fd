"""
Result codec for embedded-script output.

Scripts report a structured result by printing ``RESULT:<json>`` to stdout.
The helpers here pull the text out of a Remote Control response, find the last
marker line and turn it into a ``ScriptResult``. When no marker is present the
output is classified into a friendlier failure category.
"""

import ast
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

logger = logging.getLogger(__name__)

RESULT_MARKER = "RESULT:"
EXCERPT_LENGTH = 200

_MODULE_NAME = re.compile(r"No module named\s+'?([\w.]+)'?")
_ATTRIBUTE_NAME = re.compile(r"has no attribute\s+'?(\w+)'?")
_TRACEBACK = re.compile(r"Traceback \(most recent call last\)|^\w*Error:", re.MULTILINE)


@dataclass(frozen=True)
class ScriptResult:
    """Decoded outcome of one script execution."""
    success: bool
    raw_text: str
    payload: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"success": self.success}
        if self.payload is not None:
            result["payload"] = self.payload
        if self.error is not None:
            result["error"] = self.error
            result["error_type"] = self.error_type
        return result


def _log_entry_text(entry: Any) -> str:
    if entry is None:
        return ""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return str(entry.get("Output") or entry.get("output") or "")
    return str(entry)


def extract_log_lines(response: Any) -> List[str]:
    """Return the non-empty LogOutput lines of a Remote Control response."""
    if not isinstance(response, dict):
        return []
    entries = response.get("LogOutput")
    if not isinstance(entries, list):
        return []
    return [text for text in (_log_entry_text(e) for e in entries) if text]


def extract_output_text(response: Any) -> str:
    """
    Collect the free-form text of a response.

    Accepts plain strings, Remote Control response dicts (``LogOutput``,
    ``CommandResult``, ``Output``, string ``ReturnValue``) and lists of either.
    """
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, (bytes, bytearray)):
        return response.decode("utf-8", errors="replace")
    if isinstance(response, (list, tuple)):
        return "\n".join(filter(None, (extract_output_text(item) for item in response)))
    if isinstance(response, dict):
        parts: List[str] = extract_log_lines(response)
        for key in ("CommandResult", "Output", "output", "result"):
            value = response.get(key)
            if isinstance(value, str) and value:
                parts.append(value)
        return_value = response.get("ReturnValue")
        if isinstance(return_value, str) and return_value:
            parts.append(return_value)
        return "\n".join(parts)
    return str(response)


def _find_marker_lines(text: str) -> List[str]:
    lines = []
    for line in text.splitlines():
        stripped = line.strip()
        index = stripped.find(RESULT_MARKER)
        # Log prefixes such as "LogPython: " may precede the marker
        if index == 0 or (index > 0 and stripped[:index].rstrip().endswith(":")):
            lines.append(stripped[index + len(RESULT_MARKER):].strip())
    return lines


# literal_eval raises TypeError on unhashable keys and RecursionError on deep nesting
_PAYLOAD_ERRORS = (ValueError, SyntaxError, TypeError, MemoryError, RecursionError)


def _parse_payload(blob: str) -> Any:
    try:
        return json.loads(blob)
    except _PAYLOAD_ERRORS:
        pass
    # Scripts sometimes print a Python dict repr instead of JSON
    try:
        return ast.literal_eval(blob)
    except _PAYLOAD_ERRORS:
        raise ValueError(f"Unparseable result payload: {blob[:EXCERPT_LENGTH]}")


def excerpt(text: str, limit: int = EXCERPT_LENGTH) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _host_reported_failure(response: Any) -> bool:
    return isinstance(response, dict) and response.get("ReturnValue") is False


def _classify_failure(text: str, response: Any) -> ScriptResult:
    if "ModuleNotFoundError" in text or "No module named" in text:
        match = _MODULE_NAME.search(text)
        if match:
            error = f"Python module '{match.group(1)}' is not available in the editor"
        else:
            error = "A required Python module is not available in the editor"
        return ScriptResult(False, text, error=error, error_type="missing_module")

    if "AttributeError" in text or "has no attribute" in text:
        match = _ATTRIBUTE_NAME.search(text)
        if match:
            error = f"Editor API '{match.group(1)}' is not available in this engine version"
        else:
            error = "An editor API used by the script is not available in this engine version"
        return ScriptResult(False, text, error=error, error_type="missing_attribute")

    if _TRACEBACK.search(text):
        return ScriptResult(False, text, error=f"Script raised: {excerpt(text)}", error_type="script_error")

    if _host_reported_failure(response):
        return ScriptResult(
            False, text,
            error=f"Editor reported failure: {excerpt(text) or 'no output'}",
            error_type="remote_execution"
        )

    return ScriptResult(
        False, text,
        error=f"No parsable result in script output: {excerpt(text) or '<empty>'}",
        error_type="no_result"
    )


def decode(raw: Any) -> ScriptResult:
    """
    Decode script output into a ScriptResult.

    The last ``RESULT:`` line wins. Dict payloads may carry ``success`` and
    ``error`` keys; ``success`` is lifted out of the payload.
    """
    text = extract_output_text(raw)
    markers = _find_marker_lines(text)

    if not markers:
        return _classify_failure(text, raw)

    try:
        payload = _parse_payload(markers[-1])
    except ValueError as e:
        return ScriptResult(False, text, error=str(e), error_type="parse_error")

    if isinstance(payload, dict):
        payload = dict(payload)
        success = bool(payload.pop("success", True))
        error = None
        if not success:
            error = str(payload.get("error") or payload.get("message") or "Script reported failure")
        return ScriptResult(success, text, payload=payload, error=error,
                            error_type=None if success else "script_failure")

    return ScriptResult(True, text, payload=payload)


def extract_result_payload(raw: Any) -> Any:
    """Return the decoded payload of successful output, or None."""
    result = decode(raw)
    return result.payload if result.success else None


def join_outputs(responses: Iterable[Any]) -> str:
    return "\n".join(filter(None, (extract_output_text(r) for r in responses)))
