"""Pipeline stages applied to each indexed line: parsing, trimming, correlation."""

from .correlate import CorrelationResult, correlate_session, correlate_turns
from .parse import (
    HandlerData,
    HookRecord,
    TranscriptRecord,
    extract_handler_data,
    extract_text,
    parse_hook_line,
    parse_transcript_line,
)
from .trim import trim_context_json, trim_handler_results, trim_input_json, trim_value

__all__ = [
    "parse_transcript_line",
    "parse_hook_line",
    "extract_text",
    "extract_handler_data",
    "TranscriptRecord",
    "HookRecord",
    "HandlerData",
    "trim_value",
    "trim_input_json",
    "trim_context_json",
    "trim_handler_results",
    "correlate_turns",
    "correlate_session",
    "CorrelationResult",
]
