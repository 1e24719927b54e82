"""Deletion handling across devices that only share the metadata document.

A device notices its own deletions by diffing the local scan against the
file set it recorded at the end of its previous pass. Deletions made by any
device become tombstones in the shared document, and every other device
removes its copy once it sees the tombstone.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Iterable, List, Optional

from .context import LOCAL, REMOTE, PassContext
from .errors import HashError
from .hashing import hash_file
from .metadata import FileEntry

logger = logging.getLogger("deletion")


def companion_of(rel_path: str, primary_ext: str, companion_ext: str) -> Optional[str]:
    p = PurePosixPath(rel_path)
    suffix = p.suffix.lower()
    if suffix == primary_ext:
        return str(p.with_suffix(companion_ext))
    if suffix == companion_ext:
        return str(p.with_suffix(primary_ext))
    return None


def is_path_reuse(entry: FileEntry, observed_digests: Iterable[str]) -> bool:
    """True when a tombstoned path now holds content other than what was deleted.

    A tombstone without a known digest cannot vouch for any content, so every
    observed copy counts as a new lifecycle.
    """
    return any(digest != entry.last_known_hash for digest in observed_digests)


class DeletionTracker:
    def __init__(self, ctx: PassContext):
        self.ctx = ctx

    def _companion(self, rel: str) -> Optional[str]:
        ctx = self.ctx
        s = ctx.settings
        candidate = companion_of(rel, s.primary_ext, s.companion_ext)
        if candidate is None:
            return None
        # Extensions match case-insensitively, so the companion on disk may be "X.SBC".
        wanted = candidate.lower()
        for known in (ctx.local_files, ctx.remote_files, ctx.doc.files):
            if candidate in known:
                return candidate
            for other in known:
                if other.lower() == wanted and other != rel:
                    return other
        return candidate

    def _tombstone(self, rel: str, digest: Optional[str]):
        ctx = self.ctx
        entry = ctx.doc.entry(rel)
        if entry.is_deleted:
            entry.set_device(ctx.device_id, "deleted", digest, None, ctx.now)
            return
        # lastKnownHash is the newest content any device reported; a snapshot digest may be older.
        entry.tombstone(ctx.device_id, entry.last_known_hash or digest, ctx.now, ctx.settings.max_version_history)
        ctx.bump("tombstoned")
        logger.info("tombstoned rel=%s device=%s", rel, ctx.device_id)

    def detect_local_deletions(self) -> List[str]:
        """Propagate files removed locally since this device's previous pass."""
        ctx = self.ctx
        if not ctx.settings.can_push:
            return []
        record = ctx.doc.devices.get(ctx.device_id)
        if record is None:
            return []

        deleted: List[str] = []
        for rel, digest in sorted(record.last_known_files.items()):
            if rel in ctx.local_files or rel in ctx.processed:
                continue
            if (ctx.settings.local_root / rel).exists():
                # Present but unhashable this pass; not a deletion.
                continue
            logger.info("local_deletion_detected rel=%s", rel)
            ctx.remove(REMOTE, rel, "deletion")
            self._tombstone(rel, digest)
            ctx.processed.add(rel)
            deleted.append(rel)

            companion = self._companion(rel)
            if companion and companion not in ctx.processed:
                self._delete_companion(companion)
        return deleted

    def _delete_companion(self, rel: str):
        ctx = self.ctx
        ctx.processed.add(rel)
        local = ctx.local_files.get(rel)
        remote = ctx.remote_files.get(rel)
        entry = ctx.doc.files.get(rel)
        if local is None and remote is None and entry is None:
            return

        digest = (
            (local.digest if local else None)
            or (remote.digest if remote else None)
            or (entry.last_known_hash if entry else None)
        )
        ctx.remove(REMOTE, rel, "deletion-companion")
        ctx.remove(LOCAL, rel, "deletion-companion")
        self._tombstone(rel, digest)
        logger.info("companion_deleted rel=%s", rel)

    def propagate_tombstones(self) -> List[str]:
        """Remove leftover copies of paths another device deleted."""
        ctx = self.ctx
        removed: List[str] = []
        for rel, entry in sorted(ctx.doc.tombstones().items()):
            if rel in ctx.processed:
                continue
            for side in (LOCAL, REMOTE):
                path = ctx.root(side) / rel
                if not path.is_file():
                    continue
                try:
                    digest = hash_file(path)
                except HashError as e:
                    logger.warning("tombstone_check_skipped side=%s rel=%s error=%s", side, rel, e)
                    continue
                if is_path_reuse(entry, [digest]):
                    logger.info("tombstone_path_reused side=%s rel=%s", side, rel)
                    continue
                if ctx.remove(side, rel, "cross_device_deletion"):
                    removed.append(rel)
                    if side == LOCAL:
                        entry.set_device(ctx.device_id, "deleted", entry.last_known_hash, None, ctx.now)
            ctx.processed.add(rel)
        return removed
