"""Shared test fixtures for transcript index tests."""

from pathlib import Path
from typing import Iterable

import orjson
import pytest

from transcript_index.indexer import DeltaIndexer
from transcript_index.store import TranscriptStore


@pytest.fixture
def store(tmp_path):
    """A fresh store in a temp file, closed after the test."""
    s = TranscriptStore(tmp_path / "transcripts.db")
    yield s
    s.close()


@pytest.fixture
def projects_dir(tmp_path) -> Path:
    path = tmp_path / "projects"
    path.mkdir()
    return path


@pytest.fixture
def hooks_dir(tmp_path) -> Path:
    path = tmp_path / "hooks"
    path.mkdir()
    return path


@pytest.fixture
def indexer(store, projects_dir, hooks_dir) -> DeltaIndexer:
    return DeltaIndexer(store, projects_dir=projects_dir, hooks_dir=hooks_dir)


def _encode(entry) -> bytes:
    if isinstance(entry, bytes):
        return entry
    if isinstance(entry, str):
        return entry.encode()
    return orjson.dumps(entry)


@pytest.fixture
def write_jsonl():
    """Write (or append) entries to a JSONL file, one per line.

    Dicts are serialized; strings and bytes are written as-is so tests can
    produce malformed lines.
    """

    def _write(path: Path, entries: Iterable, append: bool = False) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab" if append else "wb") as f:
            for entry in entries:
                f.write(_encode(entry) + b"\n")
        return path

    return _write


@pytest.fixture
def make_line():
    """Build a transcript entry as the agent runtime writes it."""

    def _make(
        uuid: str,
        text: str,
        session_id: str = "sess-1",
        timestamp: str = "2025-01-15T10:00:00.000Z",
        type: str = "user",
        **extra,
    ) -> dict:
        entry = {
            "sessionId": session_id,
            "uuid": uuid,
            "parentUuid": None,
            "type": type,
            "timestamp": timestamp,
            "message": {"role": type, "content": text},
        }
        entry.update(extra)
        return entry

    return _make


@pytest.fixture
def make_hook():
    """Build a hook event, optionally carrying turn-tracker handler data."""

    def _make(
        event_type: str,
        timestamp: str,
        session_id: str = "sess-1",
        turn_id: str = None,
        sequence: int = None,
        session_name: str = None,
        **extra,
    ) -> dict:
        event = {"sessionId": session_id, "timestamp": timestamp, "eventType": event_type}
        results = {}
        if turn_id is not None:
            results[f"turn-tracker-{event_type}"] = {"data": {"turnId": turn_id, "sequence": sequence}}
        if session_name is not None:
            results[f"session-naming-{event_type}"] = {"data": {"sessionName": session_name}}
        if results:
            event["handlerResults"] = results
        event.update(extra)
        return event

    return _make
