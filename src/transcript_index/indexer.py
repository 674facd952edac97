"""Delta indexing of growing JSONL files.

Each file is resumed from the byte offset recorded in its per-file state, so
only newly appended bytes are parsed. Every pass over one file commits in a
single transaction together with the updated file state.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import apsw
import orjson

from .discovery import FileFamily, discover_files
from .paths import get_hooks_dir, get_projects_dir
from .pipeline.parse import parse_hook_line, parse_transcript_line
from .pipeline.trim import trim_context_json, trim_handler_results, trim_input_json
from .store import FileIndexState, TranscriptStore, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class FileIndexResult:
    """Outcome of indexing one file."""

    file_path: str
    rows_indexed: int = 0
    lines_skipped: int = 0
    byte_offset: int = 0
    last_line_number: int = 0
    session_id: Optional[str] = None


@dataclass
class IndexPassResult:
    """Outcome of one pass over a whole file family."""

    family: FileFamily
    files_indexed: int = 0
    rows_indexed: int = 0
    files_scanned: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class NewLines:
    lines: List[bytes]
    end_offset: int


def _is_complete_object(fragment: bytes) -> bool:
    try:
        return isinstance(orjson.loads(fragment), dict)
    except orjson.JSONDecodeError:
        return False


def read_new_lines(file_path: Union[str, Path], from_offset: int = 0) -> Optional[NewLines]:
    """Read the lines appended to ``file_path`` since ``from_offset``.

    Returns None when there is nothing new. Only bytes present when the size
    was taken are read. A trailing fragment without a newline is kept only if
    it already parses as a JSON object; otherwise the returned offset stops
    at the last line boundary and the fragment is picked up on a later read.
    """
    size = os.path.getsize(file_path)
    if from_offset >= size:
        return None

    mid_line = False
    with open(file_path, "rb") as f:
        if from_offset > 0:
            f.seek(from_offset - 1)
            mid_line = f.read(1) != b"\n"
        f.seek(from_offset)
        data = f.read(size - from_offset)

    end_offset = from_offset + len(data)
    lines = data.split(b"\n")
    tail = lines.pop()
    if tail:
        if _is_complete_object(tail):
            lines.append(tail)
        else:
            end_offset -= len(tail)

    # The previous read ended mid-line; drop the fragment unless it looks like a record
    if mid_line and lines and not lines[0].lstrip().startswith(b"{"):
        lines = lines[1:]

    if end_offset == from_offset:
        return None
    return NewLines(lines=lines, end_offset=end_offset)


class DeltaIndexer:
    """Indexes transcript and hook-event files into a ``TranscriptStore``."""

    def __init__(
        self,
        store: TranscriptStore,
        projects_dir: Optional[Union[str, Path]] = None,
        hooks_dir: Optional[Union[str, Path]] = None,
    ):
        self.store = store
        self.roots: Dict[FileFamily, Path] = {
            FileFamily.TRANSCRIPTS: Path(projects_dir) if projects_dir else get_projects_dir(),
            FileFamily.HOOKS: Path(hooks_dir) if hooks_dir else get_hooks_dir(),
        }

    # ── Single files ───────────────────────────

    def index_transcript_file(
        self,
        file_path: Union[str, Path],
        from_offset: int = 0,
        start_line: int = 1,
    ) -> FileIndexResult:
        """Index transcript lines appended after ``from_offset``.

        ``start_line`` is the line number given to the first new line.
        Malformed lines are skipped but still use up a line number.
        """
        path = str(file_path)
        result = FileIndexResult(path, byte_offset=from_offset, last_line_number=start_line - 1)
        chunk = read_new_lines(path, from_offset)
        if chunk is None:
            return result

        session_id: Optional[str] = None
        slug: Optional[str] = None
        if from_offset > 0:
            previous = self.store.get_file_state(FileFamily.TRANSCRIPTS, path)
            if previous:
                session_id = previous.session_id if previous.session_id != "unknown" else None
                slug = previous.slug

        line_number = start_line - 1
        first_timestamp: Optional[str] = None
        last_timestamp: Optional[str] = None

        with self.store.transaction() as cursor:
            for raw_line in chunk.lines:
                if not raw_line.strip():
                    continue
                line_number += 1

                record = parse_transcript_line(raw_line)
                if record is None:
                    result.lines_skipped += 1
                    continue

                session_id = record.session_id or session_id
                slug = record.slug or slug
                if record.timestamp:
                    first_timestamp = first_timestamp or record.timestamp
                    last_timestamp = record.timestamp

                self.store.upsert_line(
                    cursor,
                    {
                        "session_id": session_id or "",
                        "uuid": record.uuid or f"line-{line_number}",
                        "parent_uuid": record.parent_uuid,
                        "line_number": line_number,
                        "type": record.type,
                        "subtype": record.subtype,
                        "timestamp": record.timestamp,
                        "slug": slug,
                        "role": record.role,
                        "model": record.model,
                        "cwd": record.cwd,
                        "content": record.content,
                        "raw": record.raw,
                        "file_path": path,
                    },
                )
                result.rows_indexed += 1

            state = FileIndexState(
                file_path=path,
                session_id=session_id,
                slug=slug,
                byte_offset=chunk.end_offset,
                last_line_number=line_number,
                first_timestamp=first_timestamp,
                last_timestamp=last_timestamp,
                indexed_at=utc_now_iso(),
            )
            self.store.save_file_state(
                cursor, FileFamily.TRANSCRIPTS, state, added=result.rows_indexed, resumed=from_offset > 0
            )

        result.byte_offset = chunk.end_offset
        result.last_line_number = line_number
        result.session_id = session_id
        if result.lines_skipped:
            logger.debug(f"Skipped {result.lines_skipped} malformed line(s) in {path}")
        return result

    def index_hook_file(
        self,
        file_path: Union[str, Path],
        from_offset: int = 0,
        start_line: int = 1,
    ) -> FileIndexResult:
        """Index hook events appended after ``from_offset``.

        Turn id, turn sequence, session name and git state are read from the
        event's handler results at insert time.
        """
        path = str(file_path)
        result = FileIndexResult(path, byte_offset=from_offset, last_line_number=start_line - 1)
        chunk = read_new_lines(path, from_offset)
        if chunk is None:
            return result

        session_id: Optional[str] = None
        if from_offset > 0:
            previous = self.store.get_file_state(FileFamily.HOOKS, path)
            if previous:
                session_id = previous.session_id

        line_number = start_line - 1
        first_timestamp: Optional[str] = None
        last_timestamp: Optional[str] = None

        with self.store.transaction() as cursor:
            for raw_line in chunk.lines:
                if not raw_line.strip():
                    continue
                line_number += 1

                event = parse_hook_line(raw_line)
                if event is None:
                    result.lines_skipped += 1
                    continue

                session_id = event.session_id or session_id
                if event.timestamp:
                    first_timestamp = first_timestamp or event.timestamp
                    last_timestamp = event.timestamp

                extra = event.handler_data
                self.store.insert_hook_event(
                    cursor,
                    {
                        "session_id": session_id or "",
                        "timestamp": event.timestamp,
                        "event_type": event.event_type,
                        "tool_use_id": event.tool_use_id,
                        "tool_name": event.tool_name,
                        "decision": event.decision,
                        "handler_results": trim_handler_results(event.handler_results),
                        "input_json": trim_input_json(event.input, event.tool_name),
                        "context_json": trim_context_json(event.context),
                        "file_path": path,
                        "line_number": line_number,
                        "turn_id": extra.turn_id,
                        "turn_sequence": extra.turn_sequence,
                        "session_name": extra.session_name,
                        "git_hash": extra.git_hash,
                        "git_branch": extra.git_branch,
                        "git_dirty": None if extra.git_dirty is None else int(extra.git_dirty),
                    },
                )
                result.rows_indexed += 1

            state = FileIndexState(
                file_path=path,
                session_id=session_id,
                byte_offset=chunk.end_offset,
                last_line_number=line_number,
                first_timestamp=first_timestamp,
                last_timestamp=last_timestamp,
                indexed_at=utc_now_iso(),
            )
            self.store.save_file_state(cursor, FileFamily.HOOKS, state, added=result.rows_indexed, resumed=from_offset > 0)

        result.byte_offset = chunk.end_offset
        result.last_line_number = line_number
        result.session_id = session_id
        return result

    def index_file(self, family: FileFamily, file_path: Union[str, Path]) -> FileIndexResult:
        """Resume indexing ``file_path`` from its stored state."""
        state = self.store.get_file_state(family, file_path)
        from_offset = state.byte_offset if state else 0
        start_line = state.last_line_number + 1 if state else 1

        if family is FileFamily.TRANSCRIPTS:
            return self.index_transcript_file(file_path, from_offset, start_line)
        return self.index_hook_file(file_path, from_offset, start_line)

    # ── Whole families ─────────────────────────

    def index_once(self, family: FileFamily) -> IndexPassResult:
        """Run one delta pass over every file of ``family``.

        Files that cannot be read or written are logged and skipped; the rest
        of the pass continues.
        """
        result = IndexPassResult(family)
        discovered = discover_files(self.roots[family], family)
        for error in discovered.errors:
            logger.warning(f"Discovery error under {error.path}: {error.message}")
            result.errors.append(f"{error.path}: {error.message}")

        states = self.store.get_file_states(family)
        for path in discovered.files:
            result.files_scanned += 1
            state = states.get(str(path))
            try:
                if state is not None and state.byte_offset >= os.path.getsize(path):
                    continue
                file_result = self.index_file(family, path)
            except (OSError, apsw.Error) as e:
                logger.error(f"Failed to index {path}: {type(e).__name__}: {e}")
                result.errors.append(f"{path}: {e}")
                continue

            if file_result.rows_indexed:
                result.files_indexed += 1
                result.rows_indexed += file_result.rows_indexed

        self.store.mark_indexed()
        logger.info(
            f"Indexed {result.rows_indexed} {family.value} row(s) from {result.files_indexed} "
            f"of {result.files_scanned} file(s)"
        )
        return result

    def rebuild(self) -> Dict[FileFamily, IndexPassResult]:
        """Drop everything and index both families from the start."""
        self.store.clear()
        return {family: self.index_once(family) for family in FileFamily}
