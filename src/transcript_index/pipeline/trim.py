"""Trim oversized string leaves out of hook-event JSON payloads.

The full payload always stays in the source JSONL file, reachable through the
stored ``file_path`` and ``line_number``; the index only keeps a preview.
"""

from typing import Any, Optional

import orjson

PREVIEW_LENGTH = 500
LARGE_THRESHOLD = 1024
HANDLER_THRESHOLD = 4096

# Inputs of these tools carry the task structure itself
FULL_PAYLOAD_TOOLS = frozenset({"TodoWrite", "Task"})
FULL_PAYLOAD_FIELDS = frozenset({"prompt"})


def trim_value(value: Any, threshold: int) -> Any:
    """Deep-walk ``value`` and shorten strings longer than ``threshold``.

    Container structure is preserved; only string leaves change.
    """
    if isinstance(value, str):
        if len(value) > threshold:
            return f"{value[:PREVIEW_LENGTH]} [trimmed from {len(value)} chars]"
        return value
    if isinstance(value, list):
        return [trim_value(item, threshold) for item in value]
    if isinstance(value, dict):
        return {
            key: item if key in FULL_PAYLOAD_FIELDS else trim_value(item, threshold)
            for key, item in value.items()
        }
    return value


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return orjson.dumps(value).decode()


def trim_input_json(tool_input: Any, tool_name: Optional[str]) -> Optional[str]:
    if tool_name in FULL_PAYLOAD_TOOLS:
        return _dumps(tool_input)
    return _dumps(trim_value(tool_input, LARGE_THRESHOLD))


def trim_context_json(context: Any) -> Optional[str]:
    return _dumps(trim_value(context, LARGE_THRESHOLD))


def trim_handler_results(results: Any) -> Optional[str]:
    return _dumps(trim_value(results, HANDLER_THRESHOLD))
