"""Tests for payload trimming of hook-event JSON columns."""

import orjson

from transcript_index.pipeline.trim import (
    PREVIEW_LENGTH,
    trim_context_json,
    trim_handler_results,
    trim_input_json,
    trim_value,
)


class TestTrimValue:
    def test_short_strings_untouched(self):
        assert trim_value("short", 1024) == "short"

    def test_long_string_gets_preview_and_marker(self):
        trimmed = trim_value("a" * 2000, 1024)
        assert trimmed == "a" * PREVIEW_LENGTH + " [trimmed from 2000 chars]"

    def test_structure_preserved(self):
        value = {"list": ["x" * 2000, 1, None], "nested": {"ok": True}}
        trimmed = trim_value(value, 1024)
        assert trimmed["list"][1:] == [1, None]
        assert trimmed["list"][0].endswith("[trimmed from 2000 chars]")
        assert trimmed["nested"] == {"ok": True}

    def test_prompt_field_never_trimmed(self):
        prompt = "p" * 5000
        assert trim_value({"prompt": prompt}, 1024) == {"prompt": prompt}


class TestTrimJsonColumns:
    def test_full_payload_tools_kept_whole(self):
        todos = {"todos": [{"content": "t" * 3000}]}
        assert orjson.loads(trim_input_json(todos, "TodoWrite")) == todos

    def test_other_tools_trimmed(self):
        result = orjson.loads(trim_input_json({"content": "c" * 3000}, "Write"))
        assert result["content"].endswith("[trimmed from 3000 chars]")

    def test_handler_results_use_higher_threshold(self):
        results = {"h": {"data": "d" * 2000}}
        assert orjson.loads(trim_handler_results(results)) == results

    def test_none_stays_none(self):
        assert trim_context_json(None) is None
        assert trim_input_json(None, "Bash") is None
