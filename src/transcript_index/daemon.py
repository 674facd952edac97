"""Background indexing daemon.

Composes one initial delta pass over both file families, a ``FileWatcher``
per family, and turn correlation whenever new hook events land. The process
contract for an external supervisor is a PID file plus SIGTERM/SIGINT for
graceful shutdown.
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

from .discovery import FileFamily
from .errors import DaemonError, IndexNotReadyError
from .indexer import DeltaIndexer
from .pipeline.correlate import correlate_turns
from .store import TranscriptStore, utc_now_iso
from .watcher import DEBOUNCE_SECONDS, POLL_INTERVAL_SECONDS, FileWatcher

logger = logging.getLogger(__name__)


class SessionNameProvider(Protocol):
    """Looks up a human-readable name for a session, if one is known."""

    def get_session_name(self, session_id: str) -> Optional[str]: ...


@dataclass
class DaemonStatus:
    running: bool
    pid: int
    started_at: Optional[str] = None
    transcript_rows_indexed: int = 0
    hook_events_indexed: int = 0
    lines_correlated: int = 0
    errors: int = 0


class IndexerDaemon:
    """Keeps the index current while the log files grow."""

    def __init__(
        self,
        store: TranscriptStore,
        indexer: Optional[DeltaIndexer] = None,
        session_names: Optional[SessionNameProvider] = None,
        debounce: float = DEBOUNCE_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.store = store
        self.indexer = indexer or DeltaIndexer(store)
        self.session_names = session_names
        self.debounce = debounce
        self.poll_interval = poll_interval

        self._watchers: List[FileWatcher] = []
        self._shutdown = threading.Event()
        self._started_at: Optional[str] = None
        self._transcript_rows = 0
        self._hook_rows = 0
        self._correlated = 0
        self._errors = 0

    @property
    def running(self) -> bool:
        return bool(self._watchers)

    def start(self) -> None:
        """Index what is new since the last run, then start watching.

        Raises IndexNotReadyError if no index was ever built, and DaemonError
        if already running.
        """
        if self.running:
            raise DaemonError("Daemon is already running")
        if not self.store.has_index():
            raise IndexNotReadyError(f"No index at {self.store.db_path}; build one with `transcript-index index` first")

        transcripts = self.indexer.index_once(FileFamily.TRANSCRIPTS)
        hooks = self.indexer.index_once(FileFamily.HOOKS)
        self._transcript_rows += transcripts.rows_indexed
        self._hook_rows += hooks.rows_indexed
        self._errors += len(transcripts.errors) + len(hooks.errors)
        self._correlated += correlate_turns(self.store).lines_updated

        self._shutdown.clear()
        self._watchers = [
            FileWatcher(
                self.indexer,
                FileFamily.TRANSCRIPTS,
                self._on_transcripts,
                debounce=self.debounce,
                poll_interval=self.poll_interval,
            ).start(),
            FileWatcher(
                self.indexer,
                FileFamily.HOOKS,
                self._on_hook_events,
                debounce=self.debounce,
                poll_interval=self.poll_interval,
            ).start(),
        ]
        self._started_at = utc_now_iso()
        logger.info(
            f"Daemon started: {transcripts.rows_indexed} transcript row(s), "
            f"{hooks.rows_indexed} hook event(s) caught up"
        )

    def stop(self) -> None:
        """Stop both watchers and release their resources."""
        for watcher in self._watchers:
            self._errors += watcher.errors
            watcher.stop()
        self._watchers = []
        self._shutdown.set()
        if self._started_at:
            logger.info("Daemon stopped")

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self.running,
            pid=os.getpid(),
            started_at=self._started_at if self.running else None,
            transcript_rows_indexed=self._transcript_rows,
            hook_events_indexed=self._hook_rows,
            lines_correlated=self._correlated,
            errors=self._errors + sum(w.errors for w in self._watchers),
        )

    def _on_transcripts(self, path: str, rows: int) -> None:
        self._transcript_rows += rows
        logger.debug(f"Indexed {rows} transcript line(s) from {path}")
        if self.session_names is None:
            return

        state = self.store.get_file_state(FileFamily.TRANSCRIPTS, path)
        if state is None or not state.session_id or state.session_id == "unknown":
            return
        name = self.session_names.get_session_name(state.session_id)
        if name:
            self.store.fill_session_name(state.session_id, name)

    def _on_hook_events(self, path: str, rows: int) -> None:
        self._hook_rows += rows
        logger.debug(f"Indexed {rows} hook event(s) from {path}")
        self._correlated += correlate_turns(self.store).lines_updated

    def run_forever(self, pid_path: Optional[Union[str, Path]] = None) -> None:
        """Start, block until SIGTERM/SIGINT, then stop.

        Must be called from the main thread so signal handlers can be set.
        """

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._shutdown.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        self.start()
        if pid_path is not None:
            write_pid_file(pid_path)
        try:
            while not self._shutdown.wait(1.0):
                pass
        finally:
            self.stop()
            if pid_path is not None:
                remove_pid_file(pid_path)


# ── Process contract ───────────────────────────


def write_pid_file(pid_path: Union[str, Path]) -> None:
    pid_path = Path(pid_path)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()))


def remove_pid_file(pid_path: Union[str, Path]) -> None:
    Path(pid_path).unlink(missing_ok=True)


def read_pid(pid_path: Union[str, Path]) -> Optional[int]:
    try:
        return int(Path(pid_path).read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def daemon_pid(pid_path: Union[str, Path]) -> Optional[int]:
    """PID of a live daemon, or None. Removes a stale PID file."""
    pid = read_pid(pid_path)
    if pid is None:
        return None
    if not is_process_running(pid):
        remove_pid_file(pid_path)
        return None
    return pid


def stop_daemon(pid_path: Union[str, Path]) -> bool:
    """Signal a running daemon to shut down. Returns False if none was running."""
    pid = daemon_pid(pid_path)
    if pid is None:
        return False
    os.kill(pid, signal.SIGTERM)
    return True
