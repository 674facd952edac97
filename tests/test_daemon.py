"""Tests for the indexing daemon and its PID-file contract."""

import os
import time

import pytest

from transcript_index.daemon import (
    IndexerDaemon,
    daemon_pid,
    read_pid,
    remove_pid_file,
    stop_daemon,
    write_pid_file,
)
from transcript_index.discovery import FileFamily
from transcript_index.errors import DaemonError, IndexNotReadyError
from transcript_index.store import LineFilters


class StaticNames:
    def __init__(self, names):
        self.names = names
        self.calls = []

    def get_session_name(self, session_id):
        self.calls.append(session_id)
        return self.names.get(session_id)


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


@pytest.fixture
def built(store, indexer):
    """A store that has completed one (empty) indexing pass."""
    indexer.index_once(FileFamily.TRANSCRIPTS)
    return store


@pytest.fixture
def daemon(built, indexer):
    d = IndexerDaemon(built, indexer, debounce=0.05, poll_interval=0.2)
    yield d
    d.stop()


class TestStart:
    def test_refuses_without_index(self, store, indexer):
        d = IndexerDaemon(store, indexer)
        with pytest.raises(IndexNotReadyError):
            d.start()
        assert not d.running

    def test_double_start_raises(self, daemon):
        daemon.start()
        with pytest.raises(DaemonError):
            daemon.start()

    def test_catches_up_on_start(self, daemon, built, projects_dir, write_jsonl, make_line):
        write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x"), make_line("u2", "y")])

        daemon.start()

        status = daemon.status()
        assert status.running
        assert status.pid == os.getpid()
        assert status.started_at is not None
        assert status.transcript_rows_indexed == 2
        assert built.get_line_count() == 2


class TestLiveIndexing:
    def test_appended_lines_are_indexed(self, daemon, built, projects_dir, write_jsonl, make_line):
        path = write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x")])
        daemon.start()

        write_jsonl(path, [make_line("u2", "y")], append=True)

        assert wait_for(lambda: built.get_line_count() == 2)
        assert wait_for(lambda: daemon.status().transcript_rows_indexed == 2)

    def test_hook_events_trigger_correlation(
        self, daemon, built, projects_dir, hooks_dir, write_jsonl, make_line, make_hook
    ):
        write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x", timestamp="2025-01-15T10:00:00.000Z")])
        daemon.start()

        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [make_hook("Stop", "2025-01-15T10:01:00.000Z", turn_id="t-1", sequence=1)],
        )

        def turn_assigned():
            lines = built.get_lines(LineFilters(session_id="sess-1"))
            return bool(lines) and lines[0]["turn_id"] == "t-1"

        assert wait_for(turn_assigned)
        assert daemon.status().lines_correlated >= 1

    def test_session_name_provider_fills_names(self, built, indexer, projects_dir, write_jsonl, make_line):
        names = StaticNames({"sess-1": "brave-otter"})
        d = IndexerDaemon(built, indexer, session_names=names, debounce=0.05, poll_interval=0.2)
        d.start()
        try:
            write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x")])

            def named():
                lines = built.get_lines(LineFilters(session_id="sess-1"))
                return bool(lines) and lines[0]["session_name"] == "brave-otter"

            assert wait_for(named)
            assert "sess-1" in names.calls
        finally:
            d.stop()


class TestStop:
    def test_stop_releases_watchers(self, daemon):
        daemon.start()
        daemon.stop()

        status = daemon.status()
        assert not status.running
        assert status.started_at is None

    def test_stop_before_start_is_harmless(self, daemon):
        daemon.stop()
        assert not daemon.running

    def test_restart_after_stop(self, daemon):
        daemon.start()
        daemon.stop()
        daemon.start()
        assert daemon.running


class TestPidFile:
    def test_write_read_remove(self, tmp_path):
        pid_path = tmp_path / "run" / "daemon.pid"
        write_pid_file(pid_path)
        assert read_pid(pid_path) == os.getpid()
        assert daemon_pid(pid_path) == os.getpid()

        remove_pid_file(pid_path)
        assert read_pid(pid_path) is None
        remove_pid_file(pid_path)

    def test_garbage_pid_file(self, tmp_path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("not-a-pid")
        assert read_pid(pid_path) is None

    def test_stale_pid_file_is_removed(self, tmp_path, monkeypatch):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("424242")
        monkeypatch.setattr("transcript_index.daemon.is_process_running", lambda pid: False)

        assert daemon_pid(pid_path) is None
        assert not pid_path.exists()

    def test_stop_without_daemon(self, tmp_path):
        assert stop_daemon(tmp_path / "daemon.pid") is False

    def test_stop_signals_live_daemon(self, tmp_path, monkeypatch):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("424242")
        sent = []
        monkeypatch.setattr("transcript_index.daemon.is_process_running", lambda pid: True)
        monkeypatch.setattr("transcript_index.daemon.os.kill", lambda pid, sig: sent.append((pid, sig)))

        assert stop_daemon(pid_path) is True
        assert sent and sent[0][0] == 424242
