from pathlib import Path

import pytest

from savesync.engine.resolver import Direction, resolve
from savesync.engine.scanner import FileDescriptor


def _fd(digest: str, mtime: float) -> FileDescriptor:
    return FileDescriptor(rel_path="G/a.sbp", digest=digest, size=1, mtime=mtime, full_path=Path("/x/G/a.sbp"))


@pytest.mark.parametrize(
    "local,remote,expected",
    [
        (None, None, Direction.NONE),
        (None, _fd("r", 1.0), Direction.REMOTE_TO_LOCAL),
        (_fd("l", 1.0), None, Direction.LOCAL_TO_REMOTE),
        (_fd("same", 1.0), _fd("same", 99.0), Direction.NONE),
        (_fd("l", 20.0), _fd("r", 10.0), Direction.LOCAL_TO_REMOTE),
        (_fd("l", 10.0), _fd("r", 20.0), Direction.REMOTE_TO_LOCAL),
        (_fd("l", 10.0), _fd("r", 10.0), Direction.REMOTE_TO_LOCAL),
    ],
)
def test_resolve_direction_table(local, remote, expected):
    assert resolve(local, remote).direction == expected


def test_resolve_reports_reason_for_tie():
    result = resolve(_fd("l", 5.0), _fd("r", 5.0))
    assert "same timestamp" in result.reason
