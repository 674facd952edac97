"""Incremental full-text index over agent transcripts and hook events."""

from .daemon import DaemonStatus, IndexerDaemon, SessionNameProvider
from .discovery import DiscoveryResult, FileFamily, discover_files
from .errors import DaemonError, IndexNotReadyError, MigrationError, TranscriptIndexError
from .indexer import DeltaIndexer, FileIndexResult, IndexPassResult
from .pipeline.correlate import CorrelationResult, correlate_turns
from .search import (
    HOOK_EVENTS_TABLE,
    TRANSCRIPT_TABLE,
    SearchableTable,
    SearchRegistry,
    UnifiedSearchResult,
    search,
    search_hook_events,
    search_unified,
)
from .store import FileIndexState, HookEventFilters, LineFilters, TranscriptStore, open_store
from .watcher import DebounceQueue, FileWatcher, start_watch

__version__ = "0.3.0"

__all__ = [
    # Storage
    "TranscriptStore",
    "open_store",
    "FileIndexState",
    "LineFilters",
    "HookEventFilters",
    # Indexing
    "FileFamily",
    "DiscoveryResult",
    "discover_files",
    "DeltaIndexer",
    "FileIndexResult",
    "IndexPassResult",
    "correlate_turns",
    "CorrelationResult",
    # Search
    "search",
    "search_hook_events",
    "search_unified",
    "SearchableTable",
    "SearchRegistry",
    "UnifiedSearchResult",
    "TRANSCRIPT_TABLE",
    "HOOK_EVENTS_TABLE",
    # Live indexing
    "DebounceQueue",
    "FileWatcher",
    "start_watch",
    "IndexerDaemon",
    "DaemonStatus",
    "SessionNameProvider",
    # Errors
    "TranscriptIndexError",
    "IndexNotReadyError",
    "MigrationError",
    "DaemonError",
]
