"""Live watching of log directories with per-file debounce.

Each watched family gets one ``FileWatcher``: a watchdog observer feeds change
notifications into a ``DebounceQueue``, and a single worker thread drains
paths whose quiet period has elapsed and runs the delta indexer on them.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .discovery import FileFamily, discover_files
from .indexer import DeltaIndexer

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.1
POLL_INTERVAL_SECONDS = 1.0

UpdateCallback = Callable[[str, int], None]


class DebounceState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


@dataclass
class _Entry:
    state: DebounceState = DebounceState.IDLE
    deadline: float = 0.0


class DebounceQueue:
    """Per-path ``idle -> pending(deadline) -> idle`` state machine.

    ``touch`` moves a path to pending, or pushes its deadline back if it is
    already pending. ``pop_due`` returns every path whose deadline has passed
    and returns it to idle. Safe to call from several threads.
    """

    def __init__(self, delay: float = DEBOUNCE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def touch(self, path: str) -> None:
        with self._lock:
            entry = self._entries.setdefault(path, _Entry())
            entry.state = DebounceState.PENDING
            entry.deadline = self.clock() + self.delay

    def state(self, path: str) -> DebounceState:
        with self._lock:
            entry = self._entries.get(path)
            return entry.state if entry else DebounceState.IDLE

    def pop_due(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        due = []
        with self._lock:
            for path, entry in self._entries.items():
                if entry.state is DebounceState.PENDING and entry.deadline <= now:
                    entry.state = DebounceState.IDLE
                    due.append(path)
        return due

    def next_deadline(self) -> Optional[float]:
        with self._lock:
            pending = [e.deadline for e in self._entries.values() if e.state is DebounceState.PENDING]
        return min(pending) if pending else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class _LogEventHandler(FileSystemEventHandler):
    """Forwards create/modify/move notifications for one family."""

    def __init__(self, watcher: "FileWatcher"):
        super().__init__()
        self.watcher = watcher

    def _forward(self, path: Union[str, bytes]) -> None:
        path = os.fsdecode(path)
        if self.watcher.family.matches(path):
            self.watcher.notify(path)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.dest_path)


class FileWatcher:
    """Watches the roots of one file family and indexes files as they grow.

    Call ``start()`` to begin watching; ``stop()`` is the cancel handle and
    releases the observer and worker thread before returning.
    """

    def __init__(
        self,
        indexer: DeltaIndexer,
        family: FileFamily,
        on_update: Optional[UpdateCallback] = None,
        roots: Optional[Sequence[Union[str, Path]]] = None,
        debounce: float = DEBOUNCE_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.indexer = indexer
        self.family = family
        self.on_update = on_update
        self.roots = [Path(r) for r in roots] if roots else [indexer.roots[family]]
        self.poll_interval = poll_interval
        self.queue = DebounceQueue(debounce, clock)
        self.errors = 0

        # Advisory only; the store's per-file state is authoritative
        self._offsets: Dict[str, int] = {}
        self._observer: Optional[Observer] = None
        self._worker: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._last_poll = 0.0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def load_offsets(self) -> None:
        """Seed the offset map from stored per-file state."""
        states = self.indexer.store.get_file_states(self.family)
        self._offsets = {path: state.byte_offset for path, state in states.items()}

    def notify(self, path: Union[str, Path]) -> None:
        """Register a change to ``path``; indexing happens once it settles."""
        self.queue.touch(str(path))
        self._wake.set()

    def process_file(self, path: str) -> int:
        """Index ``path`` if it grew past its last known offset.

        Returns the number of new rows. Errors are logged and counted, never
        raised.
        """
        try:
            if not os.path.exists(path):
                return 0
            if os.path.getsize(path) <= self._offsets.get(path, 0):
                return 0

            result = self.indexer.index_file(self.family, path)
            self._offsets[path] = result.byte_offset
            if result.rows_indexed and self.on_update is not None:
                self.on_update(path, result.rows_indexed)
            return result.rows_indexed
        except Exception as e:
            self.errors += 1
            logger.warning(f"Error handling change to {path}: {type(e).__name__}: {e}")
            return 0

    def run_pending(self, now: Optional[float] = None) -> int:
        """Process every path whose debounce period has elapsed."""
        total = 0
        for path in self.queue.pop_due(now):
            total += self.process_file(path)
        return total

    def poll(self) -> None:
        """Queue any known or newly appeared file that has grown."""
        for root in self.roots:
            for path in discover_files(root, self.family).files:
                key = str(path)
                try:
                    if os.path.getsize(key) > self._offsets.get(key, 0):
                        self.queue.touch(key)
                except OSError:
                    continue

    def _run(self) -> None:
        while not self._stopping.is_set():
            now = self.queue.clock()
            if now - self._last_poll >= self.poll_interval:
                self._last_poll = now
                self.poll()

            self.run_pending()

            timeout = self.poll_interval
            deadline = self.queue.next_deadline()
            if deadline is not None:
                timeout = max(0.0, min(timeout, deadline - self.queue.clock()))
            self._wake.wait(timeout)
            self._wake.clear()

    def start(self) -> "FileWatcher":
        if self.running:
            return self

        self.load_offsets()
        self._stopping.clear()
        self._last_poll = self.queue.clock()

        observer = Observer()
        handler = _LogEventHandler(self)
        watched = 0
        for root in self.roots:
            if not root.is_dir():
                logger.warning(f"Not watching {root}: directory does not exist")
                continue
            observer.schedule(handler, str(root), recursive=True)
            watched += 1
        observer.start()
        self._observer = observer

        self._worker = threading.Thread(
            target=self._run, name=f"watcher-{self.family.value}", daemon=True
        )
        self._worker.start()
        logger.info(f"Watching {watched} {self.family.value} root(s)")
        return self

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and release the observer and worker thread."""
        self._stopping.set()
        self._wake.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        self.queue.clear()


def start_watch(
    indexer: DeltaIndexer,
    family: FileFamily,
    on_update: Optional[UpdateCallback] = None,
    **kwargs,
) -> FileWatcher:
    """Start watching ``family``; call ``stop()`` on the result to cancel."""
    return FileWatcher(indexer, family, on_update, **kwargs).start()
