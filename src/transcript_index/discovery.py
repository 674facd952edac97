"""File discovery for transcript and hook-event logs.

Directories are walked with an explicit worklist instead of recursion, and
every directory that cannot be listed is reported back to the caller, so an
inaccessible tree is never confused with an empty one.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Union

logger = logging.getLogger(__name__)

HOOK_SUFFIX = ".hooks.jsonl"
TRANSCRIPT_SUFFIX = ".jsonl"


class FileFamily(str, Enum):
    """The two families of append-only logs the index understands."""

    TRANSCRIPTS = "transcripts"
    HOOKS = "hooks"

    def matches(self, path: Union[str, Path]) -> bool:
        name = os.path.basename(str(path))
        if self is FileFamily.HOOKS:
            return name.endswith(HOOK_SUFFIX)
        return name.endswith(TRANSCRIPT_SUFFIX) and not name.endswith(HOOK_SUFFIX)


@dataclass
class DirectoryError:
    path: Path
    message: str


@dataclass
class DiscoveryResult:
    files: List[Path] = field(default_factory=list)
    errors: List[DirectoryError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def discover_files(root: Union[str, Path], family: FileFamily) -> DiscoveryResult:
    """Enumerate every file of ``family`` under ``root``.

    Symlinked directories are not followed. Files come back sorted so
    indexing order is stable between runs.
    """
    result = DiscoveryResult()
    root = Path(root)
    if not root.is_dir():
        result.errors.append(DirectoryError(root, "not a directory or does not exist"))
        return result

    pending: List[Path] = [root]
    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            pending.append(Path(entry.path))
                        elif entry.is_file() and family.matches(entry.name):
                            result.files.append(Path(entry.path))
                    except OSError as e:
                        result.errors.append(DirectoryError(Path(entry.path), str(e)))
        except OSError as e:
            logger.warning(f"Cannot scan {directory}: {e}")
            result.errors.append(DirectoryError(directory, str(e)))

    result.files.sort()
    return result


def find_transcript_files(root: Union[str, Path]) -> DiscoveryResult:
    return discover_files(root, FileFamily.TRANSCRIPTS)


def find_hook_files(root: Union[str, Path]) -> DiscoveryResult:
    return discover_files(root, FileFamily.HOOKS)
