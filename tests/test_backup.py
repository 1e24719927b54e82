import json
import os
from pathlib import Path

import pytest

from savesync.engine.backup import BackupArchiver, list_backups, restore_backup
from savesync.engine.errors import BackupError


def _write(path: Path, data: bytes, mtime: float = 1_700_000_000.0) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.utime(path, (mtime, mtime))
    return path


def test_archive_missing_source_returns_none(tmp_path: Path):
    archiver = BackupArchiver(tmp_path / "backups", stamp="20260101000000")
    assert archiver.archive(tmp_path / "nope.sbp", "G/nope.sbp", "deletion") is None
    assert archiver.archived == 0


def test_archive_copies_and_writes_manifest(tmp_path: Path):
    src = _write(tmp_path / "local" / "G" / "a.sbp", b"v1")
    archiver = BackupArchiver(tmp_path / "backups", stamp="20260101000000")

    ref = archiver.archive(src, "G/a.sbp", "conflict_resolution")

    assert ref == "20260101000000/G/a.sbp"
    copy = tmp_path / "backups" / ref
    assert copy.read_bytes() == b"v1"
    assert copy.stat().st_mtime == pytest.approx(1_700_000_000.0)

    rows = list_backups(tmp_path / "backups")
    assert len(rows) == 1
    assert rows[0]["path"] == ref
    assert rows[0]["reason"] == "conflict_resolution"
    assert rows[0]["stamp"] == "20260101000000"


def test_archive_same_path_twice_keeps_both(tmp_path: Path):
    src = _write(tmp_path / "local" / "G" / "a.sbp", b"v1")
    archiver = BackupArchiver(tmp_path / "backups", stamp="20260101000000")

    first = archiver.archive(src, "G/a.sbp", "deletion")
    src.write_bytes(b"v2")
    second = archiver.archive(src, "G/a.sbp", "deletion")

    assert first != second
    assert (tmp_path / "backups" / first).read_bytes() == b"v1"
    assert (tmp_path / "backups" / second).read_bytes() == b"v2"
    assert archiver.archived == 2


def test_list_backups_newest_pass_first(tmp_path: Path):
    src = _write(tmp_path / "G" / "a.sbp", b"x")
    BackupArchiver(tmp_path / "backups", stamp="20260101000000").archive(src, "G/a.sbp", "deletion")
    BackupArchiver(tmp_path / "backups", stamp="20260202000000").archive(src, "G/a.sbp", "deletion")

    stamps = [row["stamp"] for row in list_backups(tmp_path / "backups")]
    assert stamps == ["20260202000000", "20260101000000"]


def test_restore_backup_archives_current_target(tmp_path: Path):
    backups = tmp_path / "backups"
    src = _write(tmp_path / "old" / "G" / "a.sbp", b"old")
    ref = BackupArchiver(backups, stamp="20260101000000").archive(src, "G/a.sbp", "deletion")
    current = _write(tmp_path / "local" / "G" / "a.sbp", b"current")

    target = restore_backup(backups, ref, tmp_path / "local")

    assert target == current
    assert current.read_bytes() == b"old"
    reasons = [row["reason"] for row in list_backups(backups)]
    assert "restore_overwrite" in reasons


def test_restore_renamed_duplicate_uses_original_path(tmp_path: Path):
    backups = tmp_path / "backups"
    src = _write(tmp_path / "old" / "G" / "a.sbp", b"one")
    archiver = BackupArchiver(backups, stamp="20260101000000")
    archiver.archive(src, "G/a.sbp", "deletion")
    src.write_bytes(b"two")
    ref = archiver.archive(src, "G/a.sbp", "deletion")

    target = restore_backup(backups, ref, tmp_path / "local")

    assert target == tmp_path / "local" / "G" / "a.sbp"
    assert target.read_bytes() == b"two"


def test_restore_backup_rejects_missing_ref(tmp_path: Path):
    with pytest.raises(BackupError, match="backup_not_found"):
        restore_backup(tmp_path / "backups", "20260101000000/G/none.sbp", tmp_path / "local")


def test_restore_backup_rejects_short_ref(tmp_path: Path):
    _write(tmp_path / "backups" / "20260101000000" / "loose.sbp", b"x")
    with pytest.raises(BackupError, match="backup_ref_invalid"):
        restore_backup(tmp_path / "backups", "20260101000000/loose.sbp", tmp_path / "local")


def test_manifest_rows_are_json_lines(tmp_path: Path):
    src = _write(tmp_path / "G" / "a.sbp", b"x")
    archiver = BackupArchiver(tmp_path / "backups", stamp="20260101000000")
    archiver.archive(src, "G/a.sbp", "deletion")
    lines = (archiver.pass_dir / "manifest.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["rel"] == "G/a.sbp"
