"""Turn correlation: carry hook-event turn boundaries onto transcript lines.

Usage:
    from transcript_index.pipeline.correlate import correlate_turns
    result = correlate_turns(store)

Hook events know which turn they belong to; transcript lines do not. For each
session that still has lines without a turn, the best available boundary
source is used:

1. Stop events carrying a turn id. Each line goes to the first stop at or
   after its timestamp. Lines after the last stop belong to the turn still in
   progress and only receive the session name.
2. Otherwise, tool-use events (pre, post and failed) grouped by turn id.
   Each turn owns ``[turn_start, next_turn_start)``, and the last turn owns
   everything from its start onwards. Earlier lines only get the session
   name. When tool events of two turns interleave without a stop in between
   the windows overlap, and a line lands in whichever window is visited
   first. This is an approximation, not an exact reconstruction.
3. Otherwise only the session name is filled in.

Every update is guarded by ``turn_id IS NULL`` (and session names by
``session_name IS NULL``), so repeated runs never reassign anything.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import apsw

from ..store import TranscriptStore
from .parse import (
    EVENT_POST_TOOL_USE,
    EVENT_POST_TOOL_USE_FAILURE,
    EVENT_PRE_TOOL_USE,
    EVENT_SESSION_START,
    EVENT_STOP,
)

logger = logging.getLogger(__name__)


@dataclass
class CorrelationResult:
    lines_updated: int = 0
    sessions: int = 0


def _sessions_needing_correlation(cursor: apsw.Cursor) -> List[str]:
    return [
        row[0]
        for row in cursor.execute(
            "SELECT DISTINCT session_id FROM lines WHERE turn_id IS NULL AND session_id != ''"
        )
    ]


def _session_name(cursor: apsw.Cursor, session_id: str) -> Optional[str]:
    rows = list(
        cursor.execute(
            """SELECT session_name FROM hook_events
               WHERE session_id = ? AND event_type = ? AND session_name IS NOT NULL
               ORDER BY timestamp DESC, id DESC LIMIT 1""",
            (session_id, EVENT_SESSION_START),
        )
    )
    return rows[0][0] if rows else None


def _stop_boundaries(cursor: apsw.Cursor, session_id: str) -> List[Tuple[str, Optional[int], str]]:
    """(turn_id, turn_sequence, timestamp) of every stop with a turn id, oldest first."""
    return list(
        cursor.execute(
            """SELECT turn_id, turn_sequence, timestamp FROM hook_events
               WHERE session_id = ? AND event_type = ? AND turn_id IS NOT NULL
                     AND timestamp IS NOT NULL
               ORDER BY timestamp ASC, id ASC""",
            (session_id, EVENT_STOP),
        )
    )


def _tool_turn_windows(cursor: apsw.Cursor, session_id: str) -> List[Tuple[str, Optional[int], str, str]]:
    """(turn_id, turn_sequence, min_ts, max_ts) per turn seen on tool-use events."""
    return list(
        cursor.execute(
            """SELECT turn_id, turn_sequence, MIN(timestamp), MAX(timestamp) FROM hook_events
               WHERE session_id = ? AND event_type IN (?, ?, ?) AND turn_id IS NOT NULL
                     AND timestamp IS NOT NULL
               GROUP BY turn_id, turn_sequence
               ORDER BY turn_sequence ASC, MIN(timestamp) ASC""",
            (session_id, EVENT_PRE_TOOL_USE, EVENT_POST_TOOL_USE, EVENT_POST_TOOL_USE_FAILURE),
        )
    )


def _assign(
    conn: apsw.Connection,
    cursor: apsw.Cursor,
    session_id: str,
    turn_id: str,
    turn_sequence: Optional[int],
    session_name: Optional[str],
    time_clause: str,
    time_params: Tuple,
) -> int:
    cursor.execute(
        f"""UPDATE lines
            SET turn_id = ?, turn_sequence = ?, session_name = COALESCE(session_name, ?)
            WHERE session_id = ? AND turn_id IS NULL AND {time_clause}""",
        (turn_id, turn_sequence, session_name, session_id) + time_params,
    )
    return conn.changes()


def _fill_name(
    conn: apsw.Connection,
    cursor: apsw.Cursor,
    session_id: str,
    session_name: Optional[str],
    time_clause: str = "1=1",
    time_params: Tuple = (),
) -> int:
    if session_name is None:
        return 0
    cursor.execute(
        f"""UPDATE lines SET session_name = ?
            WHERE session_id = ? AND turn_id IS NULL AND session_name IS NULL AND {time_clause}""",
        (session_name, session_id) + time_params,
    )
    return conn.changes()


def correlate_session(store: TranscriptStore, session_id: str) -> int:
    """Correlate one session; returns the number of lines updated."""
    updated = 0
    with store.transaction() as cursor:
        conn = store.conn
        session_name = _session_name(cursor, session_id)

        stops = _stop_boundaries(cursor, session_id)
        if stops:
            previous: Optional[str] = None
            for turn_id, turn_sequence, timestamp in stops:
                if previous is None:
                    clause, params = "timestamp <= ?", (timestamp,)
                else:
                    clause, params = "timestamp > ? AND timestamp <= ?", (previous, timestamp)
                updated += _assign(conn, cursor, session_id, turn_id, turn_sequence, session_name, clause, params)
                previous = timestamp
            updated += _fill_name(conn, cursor, session_id, session_name, "timestamp > ?", (previous,))
            return updated

        windows = _tool_turn_windows(cursor, session_id)
        if windows:
            for i, (turn_id, turn_sequence, start, _end) in enumerate(windows):
                if i + 1 < len(windows):
                    next_start = windows[i + 1][2]
                    clause, params = "timestamp >= ? AND timestamp < ?", (start, next_start)
                else:
                    clause, params = "timestamp >= ?", (start,)
                updated += _assign(conn, cursor, session_id, turn_id, turn_sequence, session_name, clause, params)
            # Lines before the first window
            updated += _fill_name(conn, cursor, session_id, session_name)
            return updated

        return _fill_name(conn, cursor, session_id, session_name)


def correlate_turns(store: TranscriptStore) -> CorrelationResult:
    """Assign turns to every session that still has uncorrelated lines."""
    result = CorrelationResult()
    cursor = store.conn.cursor()
    for session_id in _sessions_needing_correlation(cursor):
        updated = correlate_session(store, session_id)
        if updated:
            result.lines_updated += updated
            result.sessions += 1

    if result.lines_updated:
        logger.info(f"Correlated {result.lines_updated} line(s) across {result.sessions} session(s)")
    return result
