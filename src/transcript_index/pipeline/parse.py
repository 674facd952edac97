"""Line parsing for transcript and hook-event JSONL files.

Each line becomes one tagged record. Known ``type``/``eventType`` values map to
their own record class; anything else that is still a well-formed JSON object
becomes an ``Unrecognized*`` record that keeps its raw text and searchable
content. Malformed lines and non-object JSON values parse to ``None``.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

import orjson

TOOL_INPUT_MAX_CHARS = 500
TOOL_RESULT_MAX_CHARS = 1000

EVENT_SESSION_START = "SessionStart"
EVENT_PROMPT_SUBMIT = "UserPromptSubmit"
EVENT_PRE_TOOL_USE = "PreToolUse"
EVENT_POST_TOOL_USE = "PostToolUse"
EVENT_POST_TOOL_USE_FAILURE = "PostToolUseFailure"
EVENT_STOP = "Stop"

TURN_TRACKER_PREFIX = "turn-tracker"
SESSION_NAMING_PREFIX = "session-naming"
GIT_TRACKER_PREFIX = "git-tracker"


# ── Transcript records ─────────────────────────


@dataclass
class TranscriptRecord:
    """Fields shared by every transcript line."""

    kind: ClassVar[str] = "unrecognized"

    type: str
    raw: str
    content: str = ""
    session_id: Optional[str] = None
    uuid: Optional[str] = None
    parent_uuid: Optional[str] = None
    subtype: Optional[str] = None
    timestamp: Optional[str] = None
    slug: Optional[str] = None
    cwd: Optional[str] = None
    role: Optional[str] = None
    model: Optional[str] = None


@dataclass
class MessageRecord(TranscriptRecord):
    kind: ClassVar[str] = "message"


@dataclass
class SummaryRecord(TranscriptRecord):
    kind: ClassVar[str] = "summary"


@dataclass
class SystemRecord(TranscriptRecord):
    kind: ClassVar[str] = "system"


@dataclass
class ProgressRecord(TranscriptRecord):
    kind: ClassVar[str] = "progress"


@dataclass
class UnrecognizedRecord(TranscriptRecord):
    """A well-formed line whose ``type`` is not one we model explicitly."""


TRANSCRIPT_VARIANTS = {
    "user": MessageRecord,
    "assistant": MessageRecord,
    "summary": SummaryRecord,
    "system": SystemRecord,
    "progress": ProgressRecord,
}


# ── Hook-event records ─────────────────────────


@dataclass
class HandlerData:
    """Turn, naming and git details pulled out of handler results."""

    turn_id: Optional[str] = None
    turn_sequence: Optional[int] = None
    session_name: Optional[str] = None
    git_hash: Optional[str] = None
    git_branch: Optional[str] = None
    git_dirty: Optional[bool] = None


@dataclass
class HookRecord:
    kind: ClassVar[str] = "unrecognized"

    event_type: str
    raw: str
    session_id: Optional[str] = None
    timestamp: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    decision: Optional[str] = None
    handler_results: Optional[Dict[str, Any]] = None
    input: Any = None
    context: Any = None
    handler_data: HandlerData = field(default_factory=HandlerData)


@dataclass
class SessionStartEvent(HookRecord):
    kind: ClassVar[str] = "session_start"


@dataclass
class PromptSubmitEvent(HookRecord):
    kind: ClassVar[str] = "prompt_submit"


@dataclass
class ToolUseEvent(HookRecord):
    kind: ClassVar[str] = "tool_use"


@dataclass
class StopEvent(HookRecord):
    kind: ClassVar[str] = "stop"


@dataclass
class UnrecognizedHookEvent(HookRecord):
    """A well-formed hook event with an ``eventType`` we do not model."""


HOOK_VARIANTS = {
    EVENT_SESSION_START: SessionStartEvent,
    EVENT_PROMPT_SUBMIT: PromptSubmitEvent,
    EVENT_PRE_TOOL_USE: ToolUseEvent,
    EVENT_POST_TOOL_USE: ToolUseEvent,
    EVENT_POST_TOOL_USE_FAILURE: ToolUseEvent,
    EVENT_STOP: StopEvent,
}


# ── Helpers ────────────────────────────────────


def _load_object(line: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    try:
        value = orjson.loads(line)
    except orjson.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _as_text(line: Union[str, bytes]) -> str:
    if isinstance(line, bytes):
        return line.decode("utf-8", errors="replace")
    return line


def _block_text(block: Dict[str, Any]) -> List[str]:
    block_type = block.get("type")
    if block_type == "text":
        text = _str(block.get("text"))
        return [text] if text else []

    if block_type == "tool_use":
        parts = [f"[Tool: {block.get('name', 'unknown')}]"]
        tool_input = block.get("input")
        if isinstance(tool_input, dict):
            for key, value in tool_input.items():
                if isinstance(value, str) and len(value) < TOOL_INPUT_MAX_CHARS:
                    parts.append(f"{key}: {value}")
        return parts

    if block_type == "tool_result":
        content = block.get("content")
        if isinstance(content, list):
            content = "\n".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        if isinstance(content, str) and content:
            return [content[:TOOL_RESULT_MAX_CHARS]]

    return []


def extract_text(entry: Dict[str, Any]) -> str:
    """Build the searchable text for one transcript entry.

    Plain message text is taken verbatim. Tool calls contribute their name and
    short string arguments, tool results are capped at 1000 characters, and
    ``summary`` and ``data.text`` fields are appended.
    """
    parts: List[str] = []

    message = entry.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            parts.append(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict):
                    parts.extend(_block_text(block))

    summary = _str(entry.get("summary"))
    if summary:
        parts.append(summary)

    data = entry.get("data")
    if isinstance(data, dict):
        text = _str(data.get("text"))
        if text:
            parts.append(text)

    return "\n".join(p for p in parts if p)


def extract_handler_data(event: Dict[str, Any]) -> HandlerData:
    """Pull turn, session-name and git details out of ``handlerResults``.

    Handler keys carry an event-specific suffix (``turn-tracker-PreToolUse``),
    so they are matched by prefix. Top-level ``turnId``/``turnSequence``/
    ``sessionName`` fields fill whatever the handlers did not provide.
    """
    found = HandlerData()
    results = event.get("handlerResults")

    if isinstance(results, dict):
        for key, result in results.items():
            if not isinstance(result, dict):
                continue
            data = result.get("data")
            if not isinstance(data, dict):
                continue

            if key.startswith(TURN_TRACKER_PREFIX):
                found.turn_id = found.turn_id or _str(data.get("turnId"))
                sequence = _int(data.get("sequence"))
                if sequence is None:
                    sequence = _int(data.get("turnSequence"))
                if found.turn_sequence is None:
                    found.turn_sequence = sequence
            elif key.startswith(SESSION_NAMING_PREFIX):
                found.session_name = found.session_name or _str(data.get("sessionName"))
            elif key.startswith(GIT_TRACKER_PREFIX):
                git_state = data.get("gitState")
                if isinstance(git_state, dict):
                    found.git_hash = _str(git_state.get("hash"))
                    found.git_branch = _str(git_state.get("branch"))
                    dirty = git_state.get("isDirty")
                    found.git_dirty = dirty if isinstance(dirty, bool) else None

    if found.turn_id is None:
        found.turn_id = _str(event.get("turnId"))
    if found.turn_sequence is None:
        found.turn_sequence = _int(event.get("turnSequence"))
    if found.session_name is None:
        found.session_name = _str(event.get("sessionName"))

    return found


# ── Public parsers ─────────────────────────────


def parse_transcript_line(line: Union[str, bytes]) -> Optional[TranscriptRecord]:
    """Parse one transcript line, or return None when it should be skipped."""
    entry = _load_object(line)
    if entry is None:
        return None

    entry_type = _str(entry.get("type")) or "unknown"
    record_cls = TRANSCRIPT_VARIANTS.get(entry_type, UnrecognizedRecord)

    message = entry.get("message")
    if not isinstance(message, dict):
        message = {}

    return record_cls(
        type=entry_type,
        raw=_as_text(line),
        content=extract_text(entry),
        session_id=_str(entry.get("sessionId")),
        uuid=_str(entry.get("uuid")),
        parent_uuid=_str(entry.get("parentUuid")),
        subtype=_str(entry.get("subtype")),
        timestamp=_str(entry.get("timestamp")),
        slug=_str(entry.get("slug")),
        cwd=_str(entry.get("cwd")),
        role=_str(message.get("role")),
        model=_str(message.get("model")),
    )


def parse_hook_line(line: Union[str, bytes]) -> Optional[HookRecord]:
    """Parse one hook-event line, or return None when it should be skipped."""
    event = _load_object(line)
    if event is None:
        return None

    event_type = _str(event.get("eventType")) or "unknown"
    record_cls = HOOK_VARIANTS.get(event_type, UnrecognizedHookEvent)
    handler_results = event.get("handlerResults")

    return record_cls(
        event_type=event_type,
        raw=_as_text(line),
        session_id=_str(event.get("sessionId")),
        timestamp=_str(event.get("timestamp")),
        tool_use_id=_str(event.get("toolUseId")),
        tool_name=_str(event.get("toolName")),
        decision=_str(event.get("decision")),
        handler_results=handler_results if isinstance(handler_results, dict) else None,
        input=event.get("input"),
        context=event.get("context"),
        handler_data=extract_handler_data(event),
    )
