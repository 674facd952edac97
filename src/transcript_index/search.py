"""Ranked full-text search over transcript lines and hook events.

Single-source searches rank by bm25 (lower is better). Unified search fans
out over every registered ``SearchableTable``, normalizes the rows into one
shape and orders the merged list by timestamp, newest first.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import apsw

from .store import TranscriptStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
SNIPPET_TOKENS = 64
DEFAULT_HIGHLIGHT = (">>>>", "<<<<")

_QUOTES = re.compile(r"[\"']")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def build_match_query(query: str) -> Optional[str]:
    """Turn free text into an FTS5 expression ORing each quoted term.

    Returns None when nothing searchable is left.
    """
    terms = _QUOTES.sub("", query).split()
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


# ── Single-source search ───────────────────────


@dataclass
class SearchResult:
    id: int
    session_id: str
    slug: Optional[str]
    uuid: str
    line_number: int
    type: str
    timestamp: Optional[str]
    content: str
    file_path: str
    snippet: str
    rank: float


@dataclass
class HookSearchResult:
    id: int
    session_id: str
    timestamp: Optional[str]
    event_type: str
    tool_name: Optional[str]
    tool_use_id: Optional[str]
    decision: Optional[str]
    turn_id: Optional[str]
    input_json: Optional[str]
    file_path: str
    line_number: int
    snippet: str
    rank: float


def search(
    store: TranscriptStore,
    query: str,
    types: Optional[Sequence[str]] = None,
    session_ids: Optional[Sequence[str]] = None,
    limit: int = DEFAULT_LIMIT,
    highlight: Tuple[str, str] = DEFAULT_HIGHLIGHT,
) -> List[SearchResult]:
    """Search transcript lines, best match first."""
    match = build_match_query(query)
    if match is None:
        return []

    params: List[Any] = [highlight[0], highlight[1], match]
    sql = f"""
        SELECT l.id, l.session_id, l.slug, l.uuid, l.line_number, l.type, l.timestamp,
               l.content, l.file_path,
               snippet(lines_fts, 0, ?, ?, '...', {SNIPPET_TOKENS}),
               bm25(lines_fts)
        FROM lines_fts
        JOIN lines l ON l.id = lines_fts.rowid
        WHERE lines_fts MATCH ?
    """
    if types:
        sql += f" AND l.type IN ({_placeholders(types)})"
        params.extend(types)
    if session_ids:
        sql += f" AND l.session_id IN ({_placeholders(session_ids)})"
        params.extend(session_ids)
    sql += " ORDER BY bm25(lines_fts) LIMIT ?"
    params.append(limit)

    cursor = store.conn.cursor()
    return [SearchResult(*row) for row in cursor.execute(sql, params)]


def search_hook_events(
    store: TranscriptStore,
    query: str,
    event_types: Optional[Sequence[str]] = None,
    session_ids: Optional[Sequence[str]] = None,
    limit: int = DEFAULT_LIMIT,
    highlight: Tuple[str, str] = DEFAULT_HIGHLIGHT,
) -> List[HookSearchResult]:
    """Search hook events by event type, tool name and tool input."""
    match = build_match_query(query)
    if match is None:
        return []

    params: List[Any] = [highlight[0], highlight[1], match]
    sql = f"""
        SELECT h.id, h.session_id, h.timestamp, h.event_type, h.tool_name, h.tool_use_id,
               h.decision, h.turn_id, h.input_json, h.file_path, h.line_number,
               snippet(hook_events_fts, 0, ?, ?, '...', {SNIPPET_TOKENS}),
               bm25(hook_events_fts)
        FROM hook_events_fts
        JOIN hook_events h ON h.id = hook_events_fts.rowid
        WHERE hook_events_fts MATCH ?
    """
    if event_types:
        sql += f" AND h.event_type IN ({_placeholders(event_types)})"
        params.extend(event_types)
    if session_ids:
        sql += f" AND h.session_id IN ({_placeholders(session_ids)})"
        params.extend(session_ids)
    sql += " ORDER BY bm25(hook_events_fts) LIMIT ?"
    params.append(limit)

    cursor = store.conn.cursor()
    return [HookSearchResult(*row) for row in cursor.execute(sql, params)]


# ── Unified search ─────────────────────────────


@dataclass(frozen=True)
class SearchableTable:
    """Describes one full-text source that unified search can query.

    ``select_columns`` are read from the base table; ``type_column``,
    ``content_column`` and ``slug_column`` name which of them fill the common
    result fields. Everything else ends up in ``extra``.
    """

    adapter_name: str
    fts_table: str
    source_table: str
    source_name: str
    select_columns: Tuple[str, ...]
    join_column: str = "id"
    source_icon: str = ""
    type_column: str = "type"
    content_column: str = "content"
    slug_column: Optional[str] = None

    def __post_init__(self):
        names = (self.fts_table, self.source_table, self.join_column, *self.select_columns)
        for name in names:
            if not _IDENTIFIER.match(name):
                raise ValueError(f"Invalid SQL identifier in searchable table {self.adapter_name!r}: {name!r}")


TRANSCRIPT_TABLE = SearchableTable(
    adapter_name="transcripts",
    fts_table="lines_fts",
    source_table="lines",
    source_name="Transcript",
    source_icon="📝",
    select_columns=(
        "id",
        "session_id",
        "slug",
        "timestamp",
        "type",
        "line_number",
        "content",
        "raw",
        "file_path",
        "turn_id",
        "session_name",
    ),
    type_column="type",
    content_column="content",
    slug_column="slug",
)

HOOK_EVENTS_TABLE = SearchableTable(
    adapter_name="hook-events",
    fts_table="hook_events_fts",
    source_table="hook_events",
    source_name="Hook Event",
    source_icon="🪝",
    select_columns=(
        "id",
        "session_id",
        "timestamp",
        "event_type",
        "line_number",
        "tool_name",
        "tool_use_id",
        "decision",
        "input_json",
        "file_path",
        "turn_id",
        "session_name",
    ),
    type_column="event_type",
    content_column="input_json",
)

_COMMON_COLUMNS = {"session_id", "timestamp", "line_number", "raw"}


@dataclass
class UnifiedSearchResult:
    adapter_name: str
    source_name: str
    source_icon: str
    session_id: str
    timestamp: Optional[str]
    entry_type: Optional[str]
    matched_text: str
    content: str
    slug: Optional[str] = None
    line_number: Optional[int] = None
    raw: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class SearchRegistry:
    """The set of searchable tables unified search fans out over."""

    def __init__(self, tables: Iterable[SearchableTable] = ()):
        self._tables: Dict[str, SearchableTable] = {}
        for table in tables:
            self.register(table)

    def register(self, table: SearchableTable) -> None:
        self._tables[table.adapter_name] = table

    def get(self, adapter_name: str) -> Optional[SearchableTable]:
        return self._tables.get(adapter_name)

    def tables(self, names: Optional[Sequence[str]] = None) -> List[SearchableTable]:
        if not names:
            return list(self._tables.values())
        return [self._tables[name] for name in names if name in self._tables]

    def __len__(self) -> int:
        return len(self._tables)


def default_registry() -> SearchRegistry:
    return SearchRegistry([TRANSCRIPT_TABLE, HOOK_EVENTS_TABLE])


def _query_table(
    store: TranscriptStore,
    table: SearchableTable,
    match: str,
    session_ids: Optional[Sequence[str]],
    limit: int,
    highlight: Tuple[str, str],
) -> List[Dict[str, Any]]:
    fts = table.fts_table
    columns = ", ".join(f"s.{c}" for c in table.select_columns)
    params: List[Any] = [highlight[0], highlight[1], match]
    sql = f"""
        SELECT {columns}, snippet({fts}, 0, ?, ?, '...', {SNIPPET_TOKENS})
        FROM {fts}
        JOIN {table.source_table} s ON s.{table.join_column} = {fts}.rowid
        WHERE {fts} MATCH ?
    """
    if session_ids:
        sql += f" AND s.session_id IN ({_placeholders(session_ids)})"
        params.extend(session_ids)
    sql += f" ORDER BY bm25({fts}) LIMIT ?"
    params.append(limit)

    names = table.select_columns + ("matched_text",)
    cursor = store.conn.cursor()
    return [dict(zip(names, row)) for row in cursor.execute(sql, params)]


def _normalize(table: SearchableTable, row: Dict[str, Any]) -> UnifiedSearchResult:
    used = _COMMON_COLUMNS | {table.type_column, table.content_column, "matched_text"}
    if table.slug_column:
        used.add(table.slug_column)

    content = row.get(table.content_column)
    entry_type = row.get(table.type_column)
    return UnifiedSearchResult(
        adapter_name=table.adapter_name,
        source_name=table.source_name,
        source_icon=table.source_icon,
        session_id=row.get("session_id") or "",
        timestamp=row.get("timestamp"),
        entry_type=entry_type,
        matched_text=row.get("matched_text") or "",
        content=content if content is not None else (entry_type or ""),
        slug=row.get(table.slug_column) if table.slug_column else None,
        line_number=row.get("line_number"),
        raw=row.get("raw"),
        extra={k: v for k, v in row.items() if k not in used},
    )


def search_unified(
    store: TranscriptStore,
    query: str,
    registry: Optional[SearchRegistry] = None,
    sources: Optional[Sequence[str]] = None,
    session_ids: Optional[Sequence[str]] = None,
    limit: int = DEFAULT_LIMIT,
    limit_per_source: Optional[int] = None,
    highlight: Tuple[str, str] = DEFAULT_HIGHLIGHT,
) -> List[UnifiedSearchResult]:
    """Search every registered source and merge by timestamp, newest first.

    Each source contributes at most ``limit_per_source`` of its best matches
    (``ceil(limit / source count)`` by default). A source whose tables are
    missing or fail to query contributes nothing.
    """
    match = build_match_query(query)
    registry = registry if registry is not None else default_registry()
    tables = registry.tables(sources)
    if match is None or not tables:
        return []

    per_source = limit_per_source or math.ceil(limit / len(tables))
    results: List[UnifiedSearchResult] = []
    for table in tables:
        try:
            rows = _query_table(store, table, match, session_ids, per_source, highlight)
        except apsw.Error as e:
            logger.debug(f"Skipping source {table.adapter_name}: {e}")
            continue
        results.extend(_normalize(table, row) for row in rows)

    results.sort(key=lambda r: r.timestamp or "", reverse=True)
    return results[:limit]
