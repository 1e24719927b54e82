from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Optional

from .scanner import FileDescriptor


class Direction(str, Enum):
    NONE = "none"
    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"


class Resolution(NamedTuple):
    direction: Direction
    reason: str


def resolve(local: Optional[FileDescriptor], remote: Optional[FileDescriptor]) -> Resolution:
    """Pick a copy direction for one path. Whole-file, last writer wins.

    Equal timestamps with differing content go to the shared replica's copy so
    every device settles on the same bytes.
    """
    if local is None and remote is None:
        return Resolution(Direction.NONE, "missing from both")
    if local is None:
        return Resolution(Direction.REMOTE_TO_LOCAL, "only in shared replica")
    if remote is None:
        return Resolution(Direction.LOCAL_TO_REMOTE, "only in local replica")
    if local.digest == remote.digest:
        return Resolution(Direction.NONE, "identical")
    if local.mtime > remote.mtime:
        return Resolution(Direction.LOCAL_TO_REMOTE, "local is newer")
    if remote.mtime > local.mtime:
        return Resolution(Direction.REMOTE_TO_LOCAL, "shared is newer")
    return Resolution(Direction.REMOTE_TO_LOCAL, "same timestamp, shared replica wins")
