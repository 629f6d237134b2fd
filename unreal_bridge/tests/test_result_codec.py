"""
Tests for the result codec.
"""

import pytest

from unreal_bridge.result_codec import (
    EXCERPT_LENGTH,
    decode,
    excerpt,
    extract_log_lines,
    extract_output_text,
    extract_result_payload,
    join_outputs,
)


class TestExtractOutputText:
    """Test cases for pulling text out of Remote Control responses."""

    def test_plain_string(self):
        assert extract_output_text("hello") == "hello"

    def test_log_output_entries(self):
        response = {"LogOutput": [{"Output": "first"}, "second", None, {"Output": ""}]}

        assert extract_log_lines(response) == ["first", "second"]
        assert extract_output_text(response) == "first\nsecond"

    def test_command_result_and_string_return_value(self):
        response = {"CommandResult": "done", "ReturnValue": "value"}
        assert extract_output_text(response) == "done\nvalue"

    def test_boolean_return_value_is_not_text(self):
        assert extract_output_text({"ReturnValue": True}) == ""

    def test_list_of_responses(self):
        assert extract_output_text([{"Output": "a"}, "b", None]) == "a\nb"
        assert join_outputs([{"Output": "a"}, {"Output": "b"}]) == "a\nb"


class TestDecode:
    """Test cases for decode."""

    def test_marker_amid_noise(self):
        raw = "LogPython: starting\nnoise line\nRESULT:{\"success\": true, \"value\": 42}\nLogPython: done"

        result = decode(raw)

        assert result.success is True
        assert result.payload == {"value": 42}
        assert result.error is None
        assert result.raw_text == raw

    def test_last_marker_wins(self):
        result = decode("RESULT:{\"value\": 1}\nRESULT:{\"value\": 2}")
        assert result.payload == {"value": 2}

    def test_marker_after_log_prefix(self):
        response = {"LogOutput": [{"Output": "LogPython: RESULT:{\"ok\": true}"}]}
        assert decode(response).payload == {"ok": True}

    def test_python_literal_payload(self):
        result = decode("RESULT:{'enabled': True, 'name': 'Niagara'}")

        assert result.success
        assert result.payload == {"enabled": True, "name": "Niagara"}

    def test_non_dict_payload(self):
        result = decode("RESULT:[1, 2, 3]")

        assert result.success
        assert result.payload == [1, 2, 3]

    def test_script_reported_failure(self):
        result = decode("RESULT:{\"success\": false, \"error\": \"Actor not found\"}")

        assert result.success is False
        assert result.error == "Actor not found"
        assert result.error_type == "script_failure"
        assert result.payload == {"error": "Actor not found"}

    def test_unparseable_payload(self):
        result = decode("RESULT:{not json")

        assert result.success is False
        assert result.error_type == "parse_error"

    @pytest.mark.parametrize("blob", ["{[1]: 2}", "[" * 100000])
    def test_malformed_literal_payload(self, blob):
        result = decode(f"LogPython: RESULT:{blob}")

        assert result.success is False
        assert result.error_type == "parse_error"

    def test_missing_marker_is_failure_with_excerpt(self):
        raw = "x" * 500
        result = decode(raw)

        assert result.success is False
        assert result.error_type == "no_result"
        assert result.error
        assert len(result.error) < 500

    def test_empty_output(self):
        result = decode(None)

        assert result.success is False
        assert result.error_type == "no_result"
        assert "<empty>" in result.error

    def test_missing_module(self):
        result = decode("Traceback (most recent call last):\nModuleNotFoundError: No module named 'numpy'")

        assert result.error_type == "missing_module"
        assert "numpy" in result.error

    def test_missing_attribute(self):
        result = decode("AttributeError: module 'unreal' has no attribute 'LevelEditorSubsystem'")

        assert result.error_type == "missing_attribute"
        assert "LevelEditorSubsystem" in result.error

    def test_traceback(self):
        result = decode("Traceback (most recent call last):\n  File \"<string>\", line 1\nValueError: boom")
        assert result.error_type == "script_error"

    def test_host_reported_failure(self):
        result = decode({"ReturnValue": False, "LogOutput": [{"Output": "something went wrong"}]})
        assert result.error_type == "remote_execution"

    @pytest.mark.parametrize("raw", [
        "RESULT:{\"success\": true, \"value\": 42}",
        "no marker at all",
        {"LogOutput": [{"Output": "RESULT:{\"a\": 1}"}]},
        "RESULT:{broken",
    ])
    def test_decode_is_idempotent(self, raw):
        assert decode(raw) == decode(raw)

    def test_extract_result_payload(self):
        assert extract_result_payload("RESULT:{\"value\": 3}") == {"value": 3}
        assert extract_result_payload("nothing") is None


def test_excerpt_truncates():
    assert excerpt("short") == "short"
    assert excerpt("y" * (EXCERPT_LENGTH + 10)) == "y" * EXCERPT_LENGTH + "..."
