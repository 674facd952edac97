"""Exception hierarchy for the transcript index."""

from typing import Optional


class TranscriptIndexError(Exception):
    """Base class for all transcript index errors."""


class IndexNotReadyError(TranscriptIndexError):
    """The index has not been built, or is at the wrong schema version.

    Callers are expected to run a full index build; this is never healed
    automatically.
    """


class MigrationError(TranscriptIndexError):
    """A schema migration step could not complete."""

    def __init__(self, from_version: int, message: str, cause: Optional[Exception] = None):
        self.from_version = from_version
        self.cause = cause
        super().__init__(f"Migration from v{from_version} failed: {message}")


class DaemonError(TranscriptIndexError):
    """The daemon was asked to do something its current state does not allow."""
