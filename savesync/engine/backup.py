from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .errors import BackupError
from .scanner import safe_rel_path

logger = logging.getLogger("backup")

MANIFEST_NAME = "manifest.jsonl"
STAMP_FORMAT = "%Y%m%d%H%M%S"


def pass_stamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now()).strftime(STAMP_FORMAT)


class BackupArchiver:
    """Copies files about to be overwritten or removed into <backup_root>/<stamp>/."""

    def __init__(self, backup_root: Path, stamp: Optional[str] = None):
        self.backup_root = Path(backup_root)
        self.stamp = stamp or pass_stamp()
        self.archived = 0

    @property
    def pass_dir(self) -> Path:
        return self.backup_root / self.stamp

    def _record(self, ref: str, rel_path: str, reason: str, source: Path):
        row = {
            "path": ref,
            "rel": rel_path,
            "reason": reason,
            "source": str(source),
            "archived_at": datetime.now().isoformat(timespec="seconds"),
        }
        with (self.pass_dir / MANIFEST_NAME).open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=False))
            f.write("\n")

    def archive(self, source: Path, rel_path: str, reason: str) -> Optional[str]:
        """Back up `source` under its relative path; returns a ref relative to backup_root.

        Returns None (nothing to protect) when `source` is gone. Raises BackupError
        when the copy itself fails.
        """
        source = Path(source)
        if not source.exists():
            logger.warning("backup_source_missing rel=%s reason=%s", rel_path, reason)
            return None

        rel_path = safe_rel_path(rel_path)
        dest = self.pass_dir / rel_path
        # Same path archived twice under one stamp keeps every copy.
        n = 1
        while dest.exists():
            dest = self.pass_dir / Path(rel_path).with_name(f"{Path(rel_path).stem}.{n}{Path(rel_path).suffix}")
            n += 1
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(str(source), str(dest))
            ref = dest.relative_to(self.backup_root).as_posix()
            self._record(ref, rel_path, reason, source)
        except OSError as e:
            raise BackupError(f"backup_failed: {rel_path}: {e}") from e

        self.archived += 1
        logger.info("archived rel=%s reason=%s ref=%s", rel_path, reason, ref)
        return ref


def list_backups(backup_root: Path, limit: int = 200) -> List[Dict[str, str]]:
    """Manifest rows across passes, newest pass first."""
    base = Path(backup_root)
    if not base.is_dir():
        return []

    rows: List[Dict[str, str]] = []
    for pass_dir in sorted((p for p in base.iterdir() if p.is_dir()), reverse=True):
        manifest = pass_dir / MANIFEST_NAME
        if not manifest.exists():
            continue
        for line in manifest.read_text(encoding="utf-8", errors="replace").splitlines():
            raw = line.strip()
            if not raw:
                continue
            try:
                item = json.loads(raw)
            except json.JSONDecodeError:
                item = {"raw": raw, "parse_error": True}
            item["stamp"] = pass_dir.name
            rows.append(item)
            if len(rows) >= limit:
                return rows
    return rows


def _manifest_rel(pass_dir: Path, ref: str) -> Optional[str]:
    manifest = pass_dir / MANIFEST_NAME
    if not manifest.exists():
        return None
    for line in manifest.read_text(encoding="utf-8", errors="replace").splitlines():
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if item.get("path") == ref and item.get("rel"):
            return safe_rel_path(item["rel"])
    return None


def restore_backup(backup_root: Path, ref: str, target_root: Path) -> Path:
    """Copy an archived file back to target_root/<group>/<filename>.

    Any file it replaces is archived first under a fresh stamp.
    """
    backup_root = Path(backup_root)
    ref = safe_rel_path(ref)
    source = backup_root / ref
    if not source.is_file():
        raise BackupError(f"backup_not_found: {ref}")

    parts = Path(ref).parts
    if len(parts) < 3:
        raise BackupError(f"backup_ref_invalid: {ref}")
    # <stamp>/<group>/<filename>; renamed duplicates carry their original path in the manifest.
    rel_path = _manifest_rel(backup_root / parts[0], ref) or Path(*parts[1:]).as_posix()
    target = Path(target_root) / rel_path

    if target.exists():
        BackupArchiver(backup_root).archive(target, rel_path, "restore_overwrite")

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(str(source), str(target))
    except OSError as e:
        raise BackupError(f"restore_failed: {ref}: {e}") from e
    logger.info("restored ref=%s target=%s", ref, target)
    return target
