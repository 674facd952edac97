"""SQLite-backed storage for transcript lines and hook events.

One ``TranscriptStore`` is opened per process and handed to every component
that needs it. Writers go through ``transaction()``, which serializes them
behind a process-wide lock; readers use the connection directly and run
alongside an open write under WAL.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import apsw
import apsw.bestpractice

from . import schema
from .discovery import FileFamily

# Enable WAL, busy timeouts, and stricter SQL (single-quoted string literals only)
apsw.bestpractice.apply(apsw.bestpractice.recommended)

logger = logging.getLogger(__name__)

LINE_COLUMNS = (
    "id",
    "session_id",
    "uuid",
    "parent_uuid",
    "line_number",
    "type",
    "subtype",
    "timestamp",
    "slug",
    "role",
    "model",
    "cwd",
    "content",
    "raw",
    "file_path",
    "turn_id",
    "turn_sequence",
    "session_name",
)

HOOK_EVENT_COLUMNS = (
    "id",
    "session_id",
    "timestamp",
    "event_type",
    "tool_use_id",
    "tool_name",
    "decision",
    "handler_results",
    "input_json",
    "context_json",
    "file_path",
    "line_number",
    "turn_id",
    "turn_sequence",
    "session_name",
    "git_hash",
    "git_branch",
    "git_dirty",
)

SESSION_COLUMNS = (
    "file_path",
    "session_id",
    "slug",
    "line_count",
    "byte_offset",
    "first_timestamp",
    "last_timestamp",
    "indexed_at",
    "last_line_number",
)

_LINE_INSERT_COLUMNS = LINE_COLUMNS[1:15]
_HOOK_INSERT_COLUMNS = HOOK_EVENT_COLUMNS[1:]

_UPSERT_LINE_SQL = f"""
    INSERT INTO lines ({", ".join(_LINE_INSERT_COLUMNS)})
    VALUES ({", ".join("?" for _ in _LINE_INSERT_COLUMNS)})
    ON CONFLICT(session_id, uuid) DO UPDATE SET
        parent_uuid = excluded.parent_uuid,
        line_number = excluded.line_number,
        type = excluded.type,
        subtype = excluded.subtype,
        timestamp = excluded.timestamp,
        slug = COALESCE(excluded.slug, lines.slug),
        role = excluded.role,
        model = excluded.model,
        cwd = excluded.cwd,
        content = excluded.content,
        raw = excluded.raw,
        file_path = excluded.file_path
"""

_INSERT_HOOK_EVENT_SQL = f"""
    INSERT INTO hook_events ({", ".join(_HOOK_INSERT_COLUMNS)})
    VALUES ({", ".join("?" for _ in _HOOK_INSERT_COLUMNS)})
"""


def utc_now_iso() -> str:
    """Current UTC time in the millisecond ``...Z`` form the log files use."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


@dataclass
class FileIndexState:
    """How much of one source file has been consumed."""

    file_path: str
    session_id: Optional[str] = None
    slug: Optional[str] = None
    count: int = 0
    byte_offset: int = 0
    last_line_number: int = 0
    first_timestamp: Optional[str] = None
    last_timestamp: Optional[str] = None
    indexed_at: Optional[str] = None


@dataclass
class LineFilters:
    session_id: Optional[str] = None  # session id or slug
    types: Optional[Sequence[str]] = None
    from_line: Optional[int] = None
    to_line: Optional[int] = None
    from_time: Optional[str] = None
    to_time: Optional[str] = None
    search: Optional[str] = None
    order: str = "asc"
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class HookEventFilters:
    session_id: Optional[str] = None
    event_types: Optional[Sequence[str]] = None
    tool_names: Optional[Sequence[str]] = None
    turn_id: Optional[str] = None
    from_time: Optional[str] = None
    to_time: Optional[str] = None
    order: str = "asc"
    limit: Optional[int] = None
    offset: int = 0


def _in_clause(column: str, values: Sequence[Any], params: List[Any]) -> str:
    params.extend(values)
    return f"{column} IN ({', '.join('?' for _ in values)})"


def _direction(order: str) -> str:
    return "DESC" if order.lower() == "desc" else "ASC"


class TranscriptStore:
    """Embedded store for lines, hook events, per-file state and metadata."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        in_memory = str(db_path) == ":memory:"
        if not in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn = apsw.Connection(str(db_path))
        self._write_lock = threading.RLock()

        cursor = self.conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA busy_timeout = 5000")

        self.version = schema.initialize(self.conn)

    # ── Transactions & metadata ────────────────

    @contextmanager
    def transaction(self) -> Iterator[apsw.Cursor]:
        """Run a block as one atomic write.

        Commits on normal exit, rolls back if the block raises. Nested calls
        become savepoints inside the outer transaction.
        """
        with self._write_lock:
            with self.conn:
                yield self.conn.cursor()

    def get_metadata(self, key: str) -> Optional[str]:
        cursor = self.conn.cursor()
        rows = list(cursor.execute("SELECT value FROM metadata WHERE key = ?", (key,)))
        return rows[0][0] if rows else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.transaction() as cursor:
            cursor.execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))

    def get_version(self) -> int:
        value = self.get_metadata("version")
        return int(value) if value is not None else 0

    def mark_indexed(self) -> str:
        now = utc_now_iso()
        self.set_metadata("last_indexed", now)
        return now

    # ── Writes (called inside transaction()) ───

    def upsert_line(self, cursor: apsw.Cursor, row: Dict[str, Any]) -> None:
        """Insert a transcript line, or refresh it if (session_id, uuid) exists.

        Turn assignments on an existing row are kept.
        """
        cursor.execute(_UPSERT_LINE_SQL, tuple(row.get(c) for c in _LINE_INSERT_COLUMNS))

    def insert_hook_event(self, cursor: apsw.Cursor, row: Dict[str, Any]) -> None:
        cursor.execute(_INSERT_HOOK_EVENT_SQL, tuple(row.get(c) for c in _HOOK_INSERT_COLUMNS))

    def save_file_state(
        self,
        cursor: apsw.Cursor,
        family: FileFamily,
        state: FileIndexState,
        added: int,
        resumed: bool,
    ) -> None:
        """Record how far a file has been indexed.

        A first-time file gets a fresh row. A resumed file has ``added`` rows
        folded into its running count.
        """
        if family is FileFamily.TRANSCRIPTS:
            if not resumed:
                cursor.execute(
                    """INSERT OR REPLACE INTO sessions
                       (file_path, session_id, slug, line_count, byte_offset,
                        first_timestamp, last_timestamp, indexed_at, last_line_number)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        state.file_path,
                        state.session_id or "unknown",
                        state.slug,
                        added,
                        state.byte_offset,
                        state.first_timestamp,
                        state.last_timestamp,
                        state.indexed_at,
                        state.last_line_number,
                    ),
                )
            else:
                cursor.execute(
                    """UPDATE sessions SET
                           line_count = line_count + ?,
                           byte_offset = ?,
                           last_line_number = ?,
                           slug = COALESCE(slug, ?),
                           session_id = CASE WHEN session_id = 'unknown' AND ? IS NOT NULL
                                             THEN ? ELSE session_id END,
                           first_timestamp = COALESCE(first_timestamp, ?),
                           last_timestamp = COALESCE(?, last_timestamp),
                           indexed_at = ?
                       WHERE file_path = ?""",
                    (
                        added,
                        state.byte_offset,
                        state.last_line_number,
                        state.slug,
                        state.session_id,
                        state.session_id,
                        state.first_timestamp,
                        state.last_timestamp,
                        state.indexed_at,
                        state.file_path,
                    ),
                )
            return

        if not resumed:
            cursor.execute(
                """INSERT OR REPLACE INTO hook_files
                   (file_path, session_id, event_count, byte_offset,
                    first_timestamp, last_timestamp, indexed_at, last_line_number)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    state.file_path,
                    state.session_id,
                    added,
                    state.byte_offset,
                    state.first_timestamp,
                    state.last_timestamp,
                    state.indexed_at,
                    state.last_line_number,
                ),
            )
        else:
            cursor.execute(
                """UPDATE hook_files SET
                       event_count = event_count + ?,
                       byte_offset = ?,
                       last_line_number = ?,
                       session_id = COALESCE(session_id, ?),
                       first_timestamp = COALESCE(first_timestamp, ?),
                       last_timestamp = COALESCE(?, last_timestamp),
                       indexed_at = ?
                   WHERE file_path = ?""",
                (
                    added,
                    state.byte_offset,
                    state.last_line_number,
                    state.session_id,
                    state.first_timestamp,
                    state.last_timestamp,
                    state.indexed_at,
                    state.file_path,
                ),
            )

    def fill_session_name(self, session_id: str, session_name: str) -> int:
        """Set ``session_name`` on lines of a session that have none yet."""
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE lines SET session_name = ? WHERE session_id = ? AND session_name IS NULL",
                (session_name, session_id),
            )
            return self.conn.changes()

    # ── Per-file state ─────────────────────────

    def _state_query(self, family: FileFamily) -> str:
        if family is FileFamily.TRANSCRIPTS:
            return (
                "SELECT file_path, session_id, slug, line_count, byte_offset, last_line_number, "
                "first_timestamp, last_timestamp, indexed_at FROM sessions"
            )
        return (
            "SELECT file_path, session_id, NULL, event_count, byte_offset, last_line_number, "
            "first_timestamp, last_timestamp, indexed_at FROM hook_files"
        )

    def get_file_state(self, family: FileFamily, file_path: Union[str, Path]) -> Optional[FileIndexState]:
        cursor = self.conn.cursor()
        rows = list(cursor.execute(self._state_query(family) + " WHERE file_path = ?", (str(file_path),)))
        return FileIndexState(*rows[0]) if rows else None

    def get_file_states(self, family: FileFamily) -> Dict[str, FileIndexState]:
        cursor = self.conn.cursor()
        return {row[0]: FileIndexState(*row) for row in cursor.execute(self._state_query(family))}

    # ── Transcript queries ─────────────────────

    def get_sessions(self, recent_days: Optional[int] = None, project_path: Optional[str] = None) -> List[Dict]:
        """List indexed transcript files, most recently active first."""
        sql = f"SELECT {', '.join(SESSION_COLUMNS)} FROM sessions WHERE 1=1"
        params: List[Any] = []
        if recent_days:
            cutoff = datetime.now(timezone.utc) - timedelta(days=recent_days)
            sql += " AND last_timestamp >= ?"
            params.append(cutoff.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z")
        if project_path:
            sql += " AND file_path LIKE ?"
            params.append(f"%{project_path}%")
        sql += " ORDER BY last_timestamp DESC"

        cursor = self.conn.cursor()
        return [dict(zip(SESSION_COLUMNS, row)) for row in cursor.execute(sql, params)]

    def get_session(self, id_or_slug: str) -> Optional[Dict]:
        cursor = self.conn.cursor()
        rows = list(
            cursor.execute(
                f"""SELECT {', '.join(SESSION_COLUMNS)} FROM sessions
                    WHERE session_id = ? OR slug = ?
                    ORDER BY last_timestamp DESC LIMIT 1""",
                (id_or_slug, id_or_slug),
            )
        )
        return dict(zip(SESSION_COLUMNS, rows[0])) if rows else None

    def resolve_session_id(self, id_or_slug: str) -> str:
        session = self.get_session(id_or_slug)
        return session["session_id"] if session else id_or_slug

    def get_lines(self, filters: Optional[LineFilters] = None) -> List[Dict]:
        """Fetch transcript lines matching ``filters`` in line-number order."""
        filters = filters or LineFilters()
        clauses: List[str] = []
        params: List[Any] = []

        if filters.session_id:
            clauses.append("session_id = ?")
            params.append(self.resolve_session_id(filters.session_id))
        if filters.types:
            clauses.append(_in_clause("type", filters.types, params))
        if filters.from_line is not None:
            clauses.append("line_number >= ?")
            params.append(filters.from_line)
        if filters.to_line is not None:
            clauses.append("line_number <= ?")
            params.append(filters.to_line)
        if filters.from_time:
            clauses.append("timestamp >= ?")
            params.append(filters.from_time)
        if filters.to_time:
            clauses.append("timestamp <= ?")
            params.append(filters.to_time)
        if filters.search:
            clauses.append("content LIKE ?")
            params.append(f"%{filters.search}%")

        sql = f"SELECT {', '.join(LINE_COLUMNS)} FROM lines"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY line_number {_direction(filters.order)}, id {_direction(filters.order)}"
        if filters.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([filters.limit, filters.offset])

        cursor = self.conn.cursor()
        return [dict(zip(LINE_COLUMNS, row)) for row in cursor.execute(sql, params)]

    def get_lines_after_id(
        self,
        after_id: int,
        session_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        """Lines inserted after ``after_id``, oldest first, for tailing UIs."""
        params: List[Any] = [after_id]
        sql = f"SELECT {', '.join(LINE_COLUMNS)} FROM lines WHERE id > ?"
        if session_id:
            sql += " AND session_id = ?"
            params.append(self.resolve_session_id(session_id))
        if types:
            sql += " AND " + _in_clause("type", types, params)
        sql += " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self.conn.cursor()
        return [dict(zip(LINE_COLUMNS, row)) for row in cursor.execute(sql, params)]

    def get_max_line_id(self, session_id: Optional[str] = None) -> int:
        cursor = self.conn.cursor()
        if session_id:
            rows = list(
                cursor.execute(
                    "SELECT MAX(id) FROM lines WHERE session_id = ?",
                    (self.resolve_session_id(session_id),),
                )
            )
        else:
            rows = list(cursor.execute("SELECT MAX(id) FROM lines"))
        return rows[0][0] or 0

    def get_line_count(self, session_id: Optional[str] = None) -> int:
        cursor = self.conn.cursor()
        if session_id:
            rows = list(
                cursor.execute(
                    "SELECT COUNT(*) FROM lines WHERE session_id = ?",
                    (self.resolve_session_id(session_id),),
                )
            )
        else:
            rows = list(cursor.execute("SELECT COUNT(*) FROM lines"))
        return rows[0][0]

    # ── Hook-event queries ─────────────────────

    def get_hook_events(self, filters: Optional[HookEventFilters] = None) -> List[Dict]:
        filters = filters or HookEventFilters()
        clauses: List[str] = []
        params: List[Any] = []

        if filters.session_id:
            clauses.append("session_id = ?")
            params.append(self.resolve_session_id(filters.session_id))
        if filters.event_types:
            clauses.append(_in_clause("event_type", filters.event_types, params))
        if filters.tool_names:
            clauses.append(_in_clause("tool_name", filters.tool_names, params))
        if filters.turn_id:
            clauses.append("turn_id = ?")
            params.append(filters.turn_id)
        if filters.from_time:
            clauses.append("timestamp >= ?")
            params.append(filters.from_time)
        if filters.to_time:
            clauses.append("timestamp <= ?")
            params.append(filters.to_time)

        sql = f"SELECT {', '.join(HOOK_EVENT_COLUMNS)} FROM hook_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY timestamp {_direction(filters.order)}, id {_direction(filters.order)}"
        if filters.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([filters.limit, filters.offset])

        cursor = self.conn.cursor()
        return [dict(zip(HOOK_EVENT_COLUMNS, row)) for row in cursor.execute(sql, params)]

    def get_hook_events_after_id(
        self,
        after_id: int,
        session_id: Optional[str] = None,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        params: List[Any] = [after_id]
        sql = f"SELECT {', '.join(HOOK_EVENT_COLUMNS)} FROM hook_events WHERE id > ?"
        if session_id:
            sql += " AND session_id = ?"
            params.append(self.resolve_session_id(session_id))
        if event_types:
            sql += " AND " + _in_clause("event_type", event_types, params)
        sql += " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self.conn.cursor()
        return [dict(zip(HOOK_EVENT_COLUMNS, row)) for row in cursor.execute(sql, params)]

    def get_max_hook_event_id(self) -> int:
        cursor = self.conn.cursor()
        rows = list(cursor.execute("SELECT MAX(id) FROM hook_events"))
        return rows[0][0] or 0

    def get_hook_event_count(self, session_id: Optional[str] = None) -> int:
        cursor = self.conn.cursor()
        if session_id:
            session_id = self.resolve_session_id(session_id)
            rows = list(cursor.execute("SELECT COUNT(*) FROM hook_events WHERE session_id = ?", (session_id,)))
        else:
            rows = list(cursor.execute("SELECT COUNT(*) FROM hook_events"))
        return rows[0][0]

    # ── Stats & lifecycle ──────────────────────

    def get_stats(self) -> Dict[str, Any]:
        """Version, row counts, last index time and on-disk size."""
        cursor = self.conn.cursor()
        session_count = list(cursor.execute("SELECT COUNT(*) FROM sessions"))[0][0]
        hook_file_count = list(cursor.execute("SELECT COUNT(*) FROM hook_files"))[0][0]

        db_size = 0
        if self.db_path.exists():
            db_size = self.db_path.stat().st_size
            wal = Path(f"{self.db_path}-wal")
            if wal.exists():
                db_size += wal.stat().st_size

        return {
            "version": self.get_version(),
            "line_count": self.get_line_count(),
            "session_count": session_count,
            "hook_event_count": self.get_hook_event_count(),
            "hook_file_count": hook_file_count,
            "last_indexed": self.get_metadata("last_indexed"),
            "db_path": str(self.db_path),
            "db_size_bytes": db_size,
        }

    def is_ready(self) -> bool:
        """True when the schema is current and at least one line is indexed."""
        return self.get_version() == schema.DB_VERSION and self.get_line_count() > 0

    def has_index(self) -> bool:
        """True when the schema is current and an indexing pass has completed."""
        return self.get_version() == schema.DB_VERSION and self.get_metadata("last_indexed") is not None

    def clear(self) -> None:
        """Drop all indexed data and recreate an empty schema."""
        with self._write_lock:
            logger.info(f"Dropping all indexed data in {self.db_path}")
            schema.drop_all(self.conn)
            self.version = schema.initialize(self.conn)

    def close(self) -> None:
        """Close database connection."""
        if hasattr(self, "conn"):
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_store(db_path: Optional[Union[str, Path]] = None) -> TranscriptStore:
    """Open the store at ``db_path``, or at the configured default location."""
    if db_path is None:
        from .paths import get_db_path

        db_path = get_db_path()
    return TranscriptStore(db_path)
