"""Tests for turn correlation between hook events and transcript lines."""

from transcript_index.discovery import FileFamily
from transcript_index.pipeline.correlate import correlate_turns


def ts(minute: int, second: int = 0) -> str:
    return f"2025-01-15T10:{minute:02d}:{second:02d}.000Z"


def turn_rows(store, session_id="sess-1"):
    cursor = store.conn.cursor()
    return list(
        cursor.execute(
            "SELECT uuid, turn_id, turn_sequence, session_name FROM lines WHERE session_id = ? ORDER BY timestamp",
            (session_id,),
        )
    )


class TestStopBoundaries:
    """Stop events with turn ids mark turn ends."""

    def test_lines_assigned_between_stops(
        self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook
    ):
        write_jsonl(
            projects_dir / "a.jsonl",
            [
                make_line("u1", "q1", timestamp=ts(0)),
                make_line("a1", "r1", timestamp=ts(1), type="assistant"),
                make_line("u2", "q2", timestamp=ts(3)),
                make_line("a2", "r2", timestamp=ts(4), type="assistant"),
                make_line("u3", "q3", timestamp=ts(6)),
            ],
        )
        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [
                make_hook("SessionStart", ts(0), session_name="brave-otter"),
                make_hook("Stop", ts(2), turn_id="t-1", sequence=1),
                make_hook("Stop", ts(5), turn_id="t-2", sequence=2),
            ],
        )
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)

        result = correlate_turns(store)

        assert result.sessions == 1
        assert turn_rows(store) == [
            ("u1", "t-1", 1, "brave-otter"),
            ("a1", "t-1", 1, "brave-otter"),
            ("u2", "t-2", 2, "brave-otter"),
            ("a2", "t-2", 2, "brave-otter"),
            ("u3", None, None, "brave-otter"),
        ]

    def test_turn_sequence_monotonic(self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook):
        write_jsonl(projects_dir / "a.jsonl", [make_line(f"u{m}", "x", timestamp=ts(m)) for m in range(10)])
        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [make_hook("Stop", ts(m, 30), turn_id=f"t-{m}", sequence=m) for m in (1, 4, 8)],
        )
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)
        correlate_turns(store)

        sequences = [row[2] for row in turn_rows(store) if row[2] is not None]
        assert sequences == sorted(sequences)
        assert set(sequences) == {1, 4, 8}

    def test_never_overwrites(self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook):
        write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x", timestamp=ts(0))])
        hooks = write_jsonl(hooks_dir / "a.hooks.jsonl", [make_hook("Stop", ts(1), turn_id="t-1", sequence=1)])
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)
        correlate_turns(store)

        # A later, earlier-timestamped stop must not reassign the line
        write_jsonl(hooks, [make_hook("Stop", ts(0, 30), turn_id="t-0", sequence=0)], append=True)
        indexer.index_once(FileFamily.HOOKS)
        second = correlate_turns(store)

        assert second.lines_updated == 0
        assert turn_rows(store)[0][1] == "t-1"


class TestToolEventFallback:
    """Without stop events, tool-use windows define turns."""

    def test_half_open_windows(self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook):
        write_jsonl(
            projects_dir / "a.jsonl",
            [
                make_line("u1", "x", timestamp=ts(1)),
                make_line("u2", "x", timestamp=ts(2)),
                make_line("u3", "x", timestamp=ts(5)),
                make_line("u4", "x", timestamp=ts(9)),
            ],
        )
        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [
                make_hook("PreToolUse", ts(1), turn_id="t-1", sequence=1),
                make_hook("PostToolUse", ts(3), turn_id="t-1", sequence=1),
                make_hook("PreToolUse", ts(5), turn_id="t-2", sequence=2),
            ],
        )
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)
        correlate_turns(store)

        assert [(r[0], r[1]) for r in turn_rows(store)] == [
            ("u1", "t-1"),
            ("u2", "t-1"),
            ("u3", "t-2"),
            ("u4", "t-2"),
        ]


    def test_failed_tool_events_define_turns(
        self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook
    ):
        write_jsonl(
            projects_dir / "a.jsonl",
            [make_line("u1", "x", timestamp=ts(1)), make_line("u2", "x", timestamp=ts(4))],
        )
        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [
                make_hook("PostToolUseFailure", ts(1), turn_id="t-1", sequence=1),
                make_hook("PostToolUseFailure", ts(4), turn_id="t-2", sequence=2),
            ],
        )
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)
        correlate_turns(store)

        assert [(r[0], r[1]) for r in turn_rows(store)] == [("u1", "t-1"), ("u2", "t-2")]

    def test_lines_before_first_window_get_session_name(
        self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook
    ):
        write_jsonl(
            projects_dir / "a.jsonl",
            [make_line("u0", "x", timestamp=ts(0)), make_line("u1", "x", timestamp=ts(2))],
        )
        write_jsonl(
            hooks_dir / "a.hooks.jsonl",
            [
                make_hook("SessionStart", ts(0), session_name="brave-otter"),
                make_hook("PreToolUse", ts(2), turn_id="t-1", sequence=1),
            ],
        )
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)
        correlate_turns(store)

        assert turn_rows(store) == [
            ("u0", None, None, "brave-otter"),
            ("u1", "t-1", 1, "brave-otter"),
        ]

class TestNoTurnInformation:
    def test_only_session_name_backfilled(
        self, store, indexer, projects_dir, hooks_dir, write_jsonl, make_line, make_hook
    ):
        write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x", timestamp=ts(1))])
        write_jsonl(hooks_dir / "a.hooks.jsonl", [make_hook("SessionStart", ts(0), session_name="quiet-fox")])
        indexer.index_once(FileFamily.TRANSCRIPTS)
        indexer.index_once(FileFamily.HOOKS)

        result = correlate_turns(store)

        assert result.lines_updated == 1
        assert turn_rows(store) == [("u1", None, None, "quiet-fox")]

    def test_no_hook_events_at_all(self, store, indexer, projects_dir, write_jsonl, make_line):
        write_jsonl(projects_dir / "a.jsonl", [make_line("u1", "x")])
        indexer.index_once(FileFamily.TRANSCRIPTS)

        result = correlate_turns(store)

        assert (result.lines_updated, result.sessions) == (0, 0)

    def test_empty_store(self, store):
        assert correlate_turns(store).lines_updated == 0
