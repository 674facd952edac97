"""Schema definition and the numbered migration chain.

A store records its schema version in ``metadata``. Opening a store at an
older version walks every step N -> N+1 in order until ``DB_VERSION`` is
reached. Each step checks before it alters, so re-running one is harmless.
A store without a metadata version is a fresh install and is created
directly at the current version.
"""

import logging
from typing import Callable, Dict, Optional

import apsw

from .errors import MigrationError

logger = logging.getLogger(__name__)

DB_VERSION = 11
OLDEST_MIGRATABLE_VERSION = 4

HOOK_FTS_CONTENT_SQL = (
    "COALESCE({t}.event_type, '') || ' ' || COALESCE({t}.tool_name, '') || ' ' || COALESCE({t}.input_json, '')"
)

METADATA_SQL = """
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

# Data tables by name; {name} lets a migration build a replacement beside the original
TABLE_DDL = {
    "lines": """
CREATE TABLE IF NOT EXISTS {name} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    uuid TEXT NOT NULL,
    parent_uuid TEXT,
    line_number INTEGER NOT NULL,
    type TEXT NOT NULL,
    subtype TEXT,
    timestamp TEXT,
    slug TEXT,
    role TEXT,
    model TEXT,
    cwd TEXT,
    content TEXT,
    raw TEXT NOT NULL,
    file_path TEXT NOT NULL,
    turn_id TEXT,
    turn_sequence INTEGER,
    session_name TEXT,
    UNIQUE(session_id, uuid)
);
""",
    "sessions": """
CREATE TABLE IF NOT EXISTS {name} (
    file_path TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    slug TEXT,
    line_count INTEGER NOT NULL DEFAULT 0,
    byte_offset INTEGER NOT NULL DEFAULT 0,
    first_timestamp TEXT,
    last_timestamp TEXT,
    indexed_at TEXT,
    last_line_number INTEGER NOT NULL DEFAULT 0
);
""",
    "hook_events": """
CREATE TABLE IF NOT EXISTS {name} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    timestamp TEXT,
    event_type TEXT NOT NULL,
    tool_use_id TEXT,
    tool_name TEXT,
    decision TEXT,
    handler_results TEXT,
    input_json TEXT,
    context_json TEXT,
    file_path TEXT NOT NULL,
    line_number INTEGER NOT NULL,
    turn_id TEXT,
    turn_sequence INTEGER,
    session_name TEXT,
    git_hash TEXT,
    git_branch TEXT,
    git_dirty INTEGER
);
""",
    "hook_files": """
CREATE TABLE IF NOT EXISTS {name} (
    file_path TEXT PRIMARY KEY,
    session_id TEXT,
    event_count INTEGER NOT NULL DEFAULT 0,
    byte_offset INTEGER NOT NULL DEFAULT 0,
    first_timestamp TEXT,
    last_timestamp TEXT,
    indexed_at TEXT,
    last_line_number INTEGER NOT NULL DEFAULT 0
);
""",
}

TABLES_SQL = METADATA_SQL + "".join(ddl.format(name=name) for name, ddl in TABLE_DDL.items())

# Columns that older stores declared NOT NULL but that may legitimately be missing
NULLABLE_COLUMNS = {
    "lines": ("timestamp",),
    "sessions": ("indexed_at",),
    "hook_events": ("timestamp",),
    "hook_files": ("session_id", "indexed_at"),
}

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_session_id ON lines(session_id);
CREATE INDEX IF NOT EXISTS idx_type ON lines(type);
CREATE INDEX IF NOT EXISTS idx_timestamp ON lines(timestamp);
CREATE INDEX IF NOT EXISTS idx_slug ON lines(slug);
CREATE INDEX IF NOT EXISTS idx_line_number ON lines(line_number);
CREATE INDEX IF NOT EXISTS idx_lines_turn_id ON lines(turn_id);
CREATE INDEX IF NOT EXISTS idx_lines_session_name ON lines(session_name);

CREATE INDEX IF NOT EXISTS idx_sessions_session_id ON sessions(session_id);

CREATE INDEX IF NOT EXISTS idx_hook_session ON hook_events(session_id);
CREATE INDEX IF NOT EXISTS idx_hook_tool_use ON hook_events(tool_use_id);
CREATE INDEX IF NOT EXISTS idx_hook_event_type ON hook_events(event_type);
CREATE INDEX IF NOT EXISTS idx_hook_timestamp ON hook_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_hook_turn_id ON hook_events(turn_id);
CREATE INDEX IF NOT EXISTS idx_hook_session_name ON hook_events(session_name);
CREATE INDEX IF NOT EXISTS idx_hook_git_branch ON hook_events(git_branch);
"""

LINES_FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS lines_fts USING fts5(
    content,
    session_id UNINDEXED,
    slug UNINDEXED,
    type UNINDEXED,
    content='lines',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS lines_ai AFTER INSERT ON lines BEGIN
    INSERT INTO lines_fts(rowid, content, session_id, slug, type)
    VALUES (new.id, new.content, new.session_id, new.slug, new.type);
END;

CREATE TRIGGER IF NOT EXISTS lines_ad AFTER DELETE ON lines BEGIN
    INSERT INTO lines_fts(lines_fts, rowid, content, session_id, slug, type)
    VALUES ('delete', old.id, old.content, old.session_id, old.slug, old.type);
END;

CREATE TRIGGER IF NOT EXISTS lines_au AFTER UPDATE OF content, session_id, slug, type ON lines BEGIN
    INSERT INTO lines_fts(lines_fts, rowid, content, session_id, slug, type)
    VALUES ('delete', old.id, old.content, old.session_id, old.slug, old.type);
    INSERT INTO lines_fts(rowid, content, session_id, slug, type)
    VALUES (new.id, new.content, new.session_id, new.slug, new.type);
END;
"""

_NEW_HOOK_CONTENT = HOOK_FTS_CONTENT_SQL.format(t="new")

HOOK_FTS_SQL = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS hook_events_fts USING fts5(content);

CREATE TRIGGER IF NOT EXISTS hook_events_ai AFTER INSERT ON hook_events BEGIN
    INSERT INTO hook_events_fts(rowid, content)
    VALUES (new.id, {_NEW_HOOK_CONTENT});
END;

CREATE TRIGGER IF NOT EXISTS hook_events_ad AFTER DELETE ON hook_events BEGIN
    DELETE FROM hook_events_fts WHERE rowid = old.id;
END;

CREATE TRIGGER IF NOT EXISTS hook_events_au AFTER UPDATE OF event_type, tool_name, input_json ON hook_events BEGIN
    DELETE FROM hook_events_fts WHERE rowid = old.id;
    INSERT INTO hook_events_fts(rowid, content)
    VALUES (new.id, {_NEW_HOOK_CONTENT});
END;
"""

DROP_ALL_SQL = """
DROP TRIGGER IF EXISTS lines_ai;
DROP TRIGGER IF EXISTS lines_ad;
DROP TRIGGER IF EXISTS lines_au;
DROP TRIGGER IF EXISTS hook_events_ai;
DROP TRIGGER IF EXISTS hook_events_ad;
DROP TRIGGER IF EXISTS hook_events_au;
DROP TABLE IF EXISTS lines_fts;
DROP TABLE IF EXISTS hook_events_fts;
DROP TABLE IF EXISTS lines;
DROP TABLE IF EXISTS sessions;
DROP TABLE IF EXISTS hook_events;
DROP TABLE IF EXISTS hook_files;
"""


# ── Helpers ────────────────────────────────────


def table_exists(cursor: apsw.Cursor, name: str) -> bool:
    rows = list(cursor.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)))
    return bool(rows)


def _columns(cursor: apsw.Cursor, table: str) -> set:
    return {row[1] for row in cursor.execute(f"PRAGMA table_info({table})")}


def _add_column(cursor: apsw.Cursor, table: str, column: str, decl: str) -> None:
    """Add a column unless the table is missing or already has it."""
    if not table_exists(cursor, table):
        return
    if column not in _columns(cursor, table):
        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")


def get_version(cursor: apsw.Cursor) -> Optional[int]:
    """Stored schema version, or None for a fresh install."""
    if not table_exists(cursor, "metadata"):
        return None
    rows = list(cursor.execute("SELECT value FROM metadata WHERE key = 'version'"))
    if not rows or rows[0][0] is None:
        return None
    return int(rows[0][0])


def set_version(cursor: apsw.Cursor, version: int) -> None:
    cursor.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES ('version', ?)",
        (str(version),),
    )


# ── Migration steps ────────────────────────────


def _migrate_4_to_5(cursor: apsw.Cursor) -> None:
    """Turn and session-name columns on lines and hook events."""
    for table in ("lines", "hook_events"):
        _add_column(cursor, table, "turn_id", "TEXT")
        _add_column(cursor, table, "turn_sequence", "INTEGER")
        _add_column(cursor, table, "session_name", "TEXT")

    if table_exists(cursor, "lines"):
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lines_turn_id ON lines(turn_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lines_session_name ON lines(session_name)")
    if table_exists(cursor, "hook_events"):
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_hook_turn_id ON hook_events(turn_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_hook_session_name ON hook_events(session_name)")


def _migrate_5_to_6(cursor: apsw.Cursor) -> None:
    """Historically created an external-content hook FTS table. Replaced by 6 -> 7."""


def _migrate_6_to_7(cursor: apsw.Cursor) -> None:
    """Rebuild hook_events_fts as a standalone table and backfill it."""
    cursor.execute(
        """
        DROP TRIGGER IF EXISTS hook_events_ai;
        DROP TRIGGER IF EXISTS hook_events_ad;
        DROP TRIGGER IF EXISTS hook_events_au;
        DROP TABLE IF EXISTS hook_events_fts;
        """
    )
    if not table_exists(cursor, "hook_events"):
        return
    cursor.execute(HOOK_FTS_SQL)
    cursor.execute(
        "INSERT INTO hook_events_fts(rowid, content) "
        f"SELECT id, {HOOK_FTS_CONTENT_SQL.format(t='hook_events')} FROM hook_events"
    )


def _migrate_7_to_8(cursor: apsw.Cursor) -> None:
    """Git state columns on hook events."""
    _add_column(cursor, "hook_events", "git_hash", "TEXT")
    _add_column(cursor, "hook_events", "git_branch", "TEXT")
    _add_column(cursor, "hook_events", "git_dirty", "INTEGER")
    if table_exists(cursor, "hook_events"):
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_hook_git_branch ON hook_events(git_branch)")


def _migrate_8_to_9(cursor: apsw.Cursor) -> None:
    """Payload trimming starts with this version; stored rows are left as-is."""


def _migrate_9_to_10(cursor: apsw.Cursor) -> None:
    """Track consumed line slots separately from indexed row counts."""
    _add_column(cursor, "sessions", "last_line_number", "INTEGER NOT NULL DEFAULT 0")
    _add_column(cursor, "hook_files", "last_line_number", "INTEGER NOT NULL DEFAULT 0")
    if table_exists(cursor, "sessions"):
        cursor.execute("UPDATE sessions SET last_line_number = line_count WHERE last_line_number < line_count")
    if table_exists(cursor, "hook_files"):
        cursor.execute("UPDATE hook_files SET last_line_number = event_count WHERE last_line_number < event_count")


def _not_null_columns(cursor: apsw.Cursor, table: str) -> set:
    return {row[1] for row in cursor.execute(f"PRAGMA table_info({table})") if row[3]}


def _rebuild_table(cursor: apsw.Cursor, table: str) -> None:
    """Recreate ``table`` from the current DDL, keeping every row and id.

    Dropping the old table also drops its triggers and indexes; the caller
    recreates the triggers and ``initialize`` recreates the indexes.
    """
    replacement = f"{table}_rebuild"
    cursor.execute(f"DROP TABLE IF EXISTS {replacement}")
    cursor.execute(TABLE_DDL[table].format(name=replacement))

    old_columns = _columns(cursor, table)
    new_columns = [row[1] for row in cursor.execute(f"PRAGMA table_info({replacement})")]
    shared = ", ".join(c for c in new_columns if c in old_columns)
    cursor.execute(f"INSERT INTO {replacement} ({shared}) SELECT {shared} FROM {table}")
    cursor.execute(f"DROP TABLE {table}")
    cursor.execute(f"ALTER TABLE {replacement} RENAME TO {table}")


def _migrate_10_to_11(cursor: apsw.Cursor) -> None:
    """Relax legacy NOT NULL constraints and narrow the lines update trigger.

    Stores created at v4 require timestamps on every line and hook event and a
    session id on every hook file, which lines such as summaries do not have.
    Their ``lines_au`` trigger also fires on any update, so turn backfills
    would rewrite the full-text index.
    """
    for table, columns in NULLABLE_COLUMNS.items():
        if table_exists(cursor, table) and _not_null_columns(cursor, table) & set(columns):
            logger.info(f"Rebuilding {table} without legacy NOT NULL constraints")
            _rebuild_table(cursor, table)

    cursor.execute("DROP TRIGGER IF EXISTS lines_au")
    if table_exists(cursor, "lines"):
        had_lines_fts = table_exists(cursor, "lines_fts")
        cursor.execute(LINES_FTS_SQL)
        if not had_lines_fts:
            cursor.execute("INSERT INTO lines_fts(lines_fts) VALUES ('rebuild')")
    if table_exists(cursor, "hook_events"):
        cursor.execute(HOOK_FTS_SQL)


MIGRATIONS: Dict[int, Callable[[apsw.Cursor], None]] = {
    4: _migrate_4_to_5,
    5: _migrate_5_to_6,
    6: _migrate_6_to_7,
    7: _migrate_7_to_8,
    8: _migrate_8_to_9,
    9: _migrate_9_to_10,
    10: _migrate_10_to_11,
}


def migrate(conn: apsw.Connection, from_version: int) -> int:
    """Apply every step from ``from_version`` up to ``DB_VERSION``.

    Each step and its version bump commit together. Returns the version the
    store ended up at.
    """
    version = from_version
    if version < OLDEST_MIGRATABLE_VERSION:
        raise MigrationError(version, f"versions older than v{OLDEST_MIGRATABLE_VERSION} cannot be migrated")

    while version < DB_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise MigrationError(version, "no migration step registered")
        logger.info(f"Migrating schema v{version} -> v{version + 1}")
        try:
            with conn:
                cursor = conn.cursor()
                step(cursor)
                set_version(cursor, version + 1)
        except apsw.Error as e:
            raise MigrationError(version, str(e), cause=e) from e
        version += 1

    return version


def initialize(conn: apsw.Connection) -> int:
    """Bring the store at ``conn`` to the current schema.

    Returns the stored version after initialization.
    """
    cursor = conn.cursor()
    version = get_version(cursor)

    if version is not None and version > DB_VERSION:
        logger.warning(f"Store is at v{version}, newer than this code (v{DB_VERSION}); leaving schema as-is")
        return version

    if version is not None and version < DB_VERSION:
        version = migrate(conn, version)

    try:
        with conn:
            had_lines_fts = table_exists(cursor, "lines_fts")
            cursor.execute(TABLES_SQL)
            cursor.execute(INDEXES_SQL)
            cursor.execute(LINES_FTS_SQL)
            cursor.execute(HOOK_FTS_SQL)
            if not had_lines_fts:
                # External-content index must be populated from existing rows
                cursor.execute("INSERT INTO lines_fts(lines_fts) VALUES ('rebuild')")
            set_version(cursor, DB_VERSION)
    except apsw.Error as e:
        raise MigrationError(version or DB_VERSION, f"schema initialization failed: {e}", cause=e) from e

    return DB_VERSION


def drop_all(conn: apsw.Connection) -> None:
    """Drop every data table, FTS table and trigger, plus ``last_indexed``."""
    with conn:
        cursor = conn.cursor()
        cursor.execute(DROP_ALL_SQL)
        if table_exists(cursor, "metadata"):
            cursor.execute("DELETE FROM metadata WHERE key = 'last_indexed'")
