"""Tests for worklist-based file discovery."""

import os

import pytest

from transcript_index.discovery import FileFamily, discover_files, find_hook_files, find_transcript_files


class TestFileFamily:
    def test_suffix_matching(self):
        assert FileFamily.TRANSCRIPTS.matches("/a/b/session.jsonl")
        assert not FileFamily.TRANSCRIPTS.matches("/a/b/session.hooks.jsonl")
        assert FileFamily.HOOKS.matches("session.hooks.jsonl")
        assert not FileFamily.HOOKS.matches("session.jsonl")
        assert not FileFamily.TRANSCRIPTS.matches("notes.txt")


class TestDiscoverFiles:
    def test_nested_directories(self, tmp_path):
        (tmp_path / "p1" / "deep").mkdir(parents=True)
        (tmp_path / "p1" / "a.jsonl").write_text("")
        (tmp_path / "p1" / "deep" / "b.jsonl").write_text("")
        (tmp_path / "p1" / "a.hooks.jsonl").write_text("")
        (tmp_path / "readme.md").write_text("")

        transcripts = find_transcript_files(tmp_path)
        hooks = find_hook_files(tmp_path)

        assert [p.name for p in transcripts.files] == ["a.jsonl", "b.jsonl"]
        assert [p.name for p in hooks.files] == ["a.hooks.jsonl"]
        assert transcripts.ok and hooks.ok

    def test_empty_root_is_not_an_error(self, tmp_path):
        result = discover_files(tmp_path, FileFamily.TRANSCRIPTS)
        assert result.files == []
        assert result.errors == []

    def test_missing_root_is_reported(self, tmp_path):
        result = discover_files(tmp_path / "nope", FileFamily.TRANSCRIPTS)
        assert result.files == []
        assert len(result.errors) == 1
        assert result.errors[0].path == tmp_path / "nope"

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any directory")
    def test_unreadable_directory_is_reported(self, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        (locked / "hidden.jsonl").write_text("")
        (tmp_path / "visible.jsonl").write_text("")
        locked.chmod(0)
        try:
            result = discover_files(tmp_path, FileFamily.TRANSCRIPTS)
        finally:
            locked.chmod(0o755)

        assert [p.name for p in result.files] == ["visible.jsonl"]
        assert [e.path for e in result.errors] == [locked]
