"""Centralized data paths for the transcript index.

Every location can be overridden through an environment variable, which is
how tests and custom installations point the index somewhere else.

Resolution order for each path:
  1. The matching TRANSCRIPT_INDEX_* env var
  2. The default location under the user's home directory
"""

import os
from pathlib import Path

_DEFAULT_DATA_DIR = Path.home() / ".claude-code-sdk"
_DEFAULT_DB_PATH = _DEFAULT_DATA_DIR / "transcripts.db"
_DEFAULT_PID_PATH = _DEFAULT_DATA_DIR / "indexer.pid"

_DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"
_DEFAULT_HOOKS_DIR = Path.home() / ".claude" / "hooks"


def get_db_path() -> Path:
    """Resolve the index database path.

    Checks TRANSCRIPT_INDEX_DB first. The parent directory is created so a
    fresh install can open the store straight away.
    """
    env = os.environ.get("TRANSCRIPT_INDEX_DB")
    path = Path(env) if env else _DEFAULT_DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_projects_dir() -> Path:
    """Root directory holding transcript JSONL files."""
    env = os.environ.get("TRANSCRIPT_INDEX_PROJECTS_DIR")
    return Path(env) if env else _DEFAULT_PROJECTS_DIR


def get_hooks_dir() -> Path:
    """Root directory holding hook-event JSONL files."""
    env = os.environ.get("TRANSCRIPT_INDEX_HOOKS_DIR")
    return Path(env) if env else _DEFAULT_HOOKS_DIR


def get_pid_path() -> Path:
    env = os.environ.get("TRANSCRIPT_INDEX_PID")
    return Path(env) if env else _DEFAULT_PID_PATH
