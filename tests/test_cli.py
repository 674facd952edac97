"""Smoke tests for the transcript-index CLI."""

import pytest
from typer.testing import CliRunner

from transcript_index.cli import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch, write_jsonl, make_line, make_hook):
    projects = tmp_path / "projects"
    hooks = tmp_path / "hooks"
    write_jsonl(projects / "a.jsonl", [make_line("u1", "deploy the build"), make_line("u2", "done")])
    write_jsonl(hooks / "a.hooks.jsonl", [make_hook("Stop", "2025-01-15T10:05:00.000Z", turn_id="t-1", sequence=1)])
    monkeypatch.setenv("TRANSCRIPT_INDEX_DB", str(tmp_path / "index.db"))
    monkeypatch.setenv("TRANSCRIPT_INDEX_PROJECTS_DIR", str(projects))
    monkeypatch.setenv("TRANSCRIPT_INDEX_HOOKS_DIR", str(hooks))
    monkeypatch.setenv("TRANSCRIPT_INDEX_PID", str(tmp_path / "indexer.pid"))
    return tmp_path


def test_index_then_search(cli_env):
    result = runner.invoke(app, ["index"])
    assert result.exit_code == 0, result.output
    assert "transcripts: 2 row(s)" in result.output
    assert "hooks: 1 row(s)" in result.output
    assert "Correlated 2 line(s)" in result.output

    result = runner.invoke(app, ["search", "nonexistentterm"])
    assert result.exit_code == 0
    assert "No results found" in result.output


def test_search_before_index(cli_env):
    result = runner.invoke(app, ["search", "deploy"])
    assert result.exit_code == 1
    assert "not ready" in result.output


def test_search_unknown_source(cli_env):
    runner.invoke(app, ["index"])
    result = runner.invoke(app, ["search", "deploy", "--source", "emails"])
    assert result.exit_code == 1
    assert "Unknown source(s): emails" in result.output

    result = runner.invoke(app, ["search", "deploy", "--source", "transcripts"])
    assert result.exit_code == 0
    assert "No results found" not in result.output


def test_stats(cli_env):
    runner.invoke(app, ["index"])
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "line_count" in result.output


def test_daemon_status_not_running(cli_env):
    result = runner.invoke(app, ["daemon", "status"])
    assert result.exit_code == 1
    assert "not running" in result.output


def test_daemon_stop_not_running(cli_env):
    result = runner.invoke(app, ["daemon", "stop"])
    assert result.exit_code == 0
    assert "not running" in result.output
