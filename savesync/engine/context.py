from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Set

from .backup import BackupArchiver
from .errors import BackupError
from .metadata import MetadataDocument
from .scanner import FileDescriptor
from .settings import EngineSettings

logger = logging.getLogger("sync")

LOCAL = "local"
REMOTE = "remote"


def copy_preserving(src: Path, dst: Path):
    """Copy with timestamps kept; the destination is swapped in whole."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{dst.name}.", suffix=".part", dir=str(dst.parent))
    os.close(fd)
    try:
        shutil.copy2(str(src), tmp)
        os.replace(tmp, str(dst))
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class PassContext:
    """Mutable state of one pass: scans, metadata, archiver and counters."""

    def __init__(
        self,
        settings: EngineSettings,
        doc: MetadataDocument,
        archiver: BackupArchiver,
        local_files: Dict[str, FileDescriptor],
        remote_files: Dict[str, FileDescriptor],
        now: str,
        summary: Dict[str, Any],
    ):
        self.settings = settings
        self.doc = doc
        self.archiver = archiver
        self.local_files = local_files
        self.remote_files = remote_files
        self.now = now
        self.summary = summary
        self.processed: Set[str] = set()
        # Local digests as they stand once this pass's copies/removals are applied.
        self.local_after: Dict[str, str] = {rel: d.digest for rel, d in local_files.items()}

    @property
    def device_id(self) -> str:
        return self.settings.device_id

    def root(self, side: str) -> Path:
        return self.settings.local_root if side == LOCAL else self.settings.remote_root

    def files(self, side: str) -> Dict[str, FileDescriptor]:
        return self.local_files if side == LOCAL else self.remote_files

    def can_write(self, side: str) -> bool:
        return self.settings.can_pull if side == LOCAL else self.settings.can_push

    def bump(self, key: str, n: int = 1):
        self.summary[key] = int(self.summary.get(key, 0)) + n

    def archive(self, side: str, rel: str, reason: str) -> bool:
        """Back up the copy on `side`; False means the destructive step must not run."""
        try:
            self.archiver.archive(self.root(side) / rel, rel, reason)
            return True
        except BackupError as e:
            logger.warning("backup_failed side=%s rel=%s reason=%s error=%s", side, rel, reason, e)
            if self.settings.allow_missing_backup:
                return True
            self.bump("skipped")
            return False

    def remove(self, side: str, rel: str, reason: str) -> bool:
        if not self.can_write(side):
            logger.debug("remove_blocked side=%s rel=%s mode=%s", side, rel, self.settings.sync_mode)
            return False

        path = self.root(side) / rel
        if not path.exists():
            self.files(side).pop(rel, None)
            return False

        if not self.archive(side, rel, reason):
            return False
        try:
            path.unlink()
        except OSError as e:
            logger.error("remove_failed side=%s rel=%s error=%s", side, rel, e)
            self.bump("errors")
            return False

        self.files(side).pop(rel, None)
        if side == LOCAL:
            self.local_after.pop(rel, None)
            self.bump("deleted_local")
        else:
            self.bump("deleted_remote")
        logger.info("removed side=%s rel=%s reason=%s", side, rel, reason)
        return True
