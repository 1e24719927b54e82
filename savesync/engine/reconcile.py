from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .backup import BackupArchiver, pass_stamp
from .context import LOCAL, REMOTE, PassContext, copy_preserving
from .deletion import DeletionTracker, is_path_reuse
from .errors import MetadataPersistError
from .materialize import pin_directory
from .metadata import MetadataStore, mtime_iso, now_iso
from .resolver import Direction, resolve
from .scanner import list_groups, scan_tree
from .settings import EngineSettings

logger = logging.getLogger("sync")


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


def prune_empty_groups(root: Path) -> int:
    pruned = 0
    for group in list_groups(root):
        group_dir = Path(root) / group
        try:
            if any(os.scandir(group_dir)):
                continue
            group_dir.rmdir()
        except OSError as e:
            logger.warning("prune_failed dir=%s error=%s", group_dir, e)
            continue
        pruned += 1
        logger.info("pruned_empty_group dir=%s", group_dir)
    return pruned


class ReconciliationEngine:
    def __init__(self, settings: EngineSettings, store: Optional[MetadataStore] = None):
        self.settings = settings
        self.store = store or MetadataStore(
            settings.metadata_path,
            backup_root=settings.backup_root,
            max_history=settings.max_version_history,
        )

    def _new_summary(self, run_id: str, run_type: str) -> Dict[str, Any]:
        s = self.settings
        return {
            "run_id": run_id,
            "run_type": run_type,
            "device_id": s.device_id,
            "sync_mode": s.sync_mode,
            "local_root": str(s.local_root),
            "remote_root": str(s.remote_root),
            "started_at": _now_utc(),
            "finished_at": None,
            "local_total": 0,
            "remote_total": 0,
            "pushed": 0,
            "pulled": 0,
            "conflicts": 0,
            "deleted_local": 0,
            "deleted_remote": 0,
            "tombstoned": 0,
            "revived": 0,
            "backups": 0,
            "skipped": 0,
            "pruned_dirs": 0,
            "errors": 0,
            "notes": [],
        }

    def run_once(self, run_type: str = "manual") -> Dict[str, Any]:
        """Run one full pass and return its summary. Never raises."""
        stamp = pass_stamp()
        summary = self._new_summary(f"{stamp}-{self.settings.device_id}", run_type)
        archiver = BackupArchiver(self.settings.backup_root, stamp)
        try:
            self._run(archiver, summary)
            logger.info(
                "run_success pushed=%s pulled=%s conflicts=%s deleted_local=%s deleted_remote=%s errors=%s",
                summary["pushed"],
                summary["pulled"],
                summary["conflicts"],
                summary["deleted_local"],
                summary["deleted_remote"],
                summary["errors"],
            )
        except MetadataPersistError as e:
            summary["errors"] += 1
            summary["fatal_error"] = str(e)
            summary["metadata_persist_failed"] = True
            logger.error("run_failed metadata_persist_failed: %s", e)
        except Exception as e:
            summary["errors"] += 1
            summary["fatal_error"] = str(e)
            logger.exception("run_failed: %s", e)
        finally:
            summary["backups"] = archiver.archived
            summary["finished_at"] = _now_utc()
        return summary

    def _run(self, archiver: BackupArchiver, summary: Dict[str, Any]):
        s = self.settings

        if s.pin_command:
            pin_directory(s.remote_root, s.pin_command)

        local_present = s.local_root.is_dir()
        if not local_present:
            if not s.can_pull:
                summary["notes"].append("nothing_to_push")
                logger.warning("nothing_to_push local_root_missing=%s", s.local_root)
                return
            s.local_root.mkdir(parents=True, exist_ok=True)
            summary["notes"].append("local_root_created")

        doc = self.store.load()
        local_files = scan_tree(s.local_root, s.extensions, s.scan_workers)
        remote_files = scan_tree(s.remote_root, s.extensions, s.scan_workers)
        summary["local_total"] = len(local_files)
        summary["remote_total"] = len(remote_files)
        if s.can_push and not local_files:
            summary["notes"].append("nothing_to_push")

        now = now_iso()
        ctx = PassContext(s, doc, archiver, local_files, remote_files, now, summary)
        tracker = DeletionTracker(ctx)

        previous_known = dict(doc.device(s.device_id).last_known_files)
        # A root that did not exist has no deletions to report, only a fresh start.
        if local_present:
            tracker.detect_local_deletions()

        for rel in sorted((set(local_files) | set(remote_files)) - ctx.processed):
            self._reconcile_path(ctx, rel)
            ctx.processed.add(rel)

        tracker.propagate_tombstones()

        known = dict(ctx.local_after)
        for rel, digest in previous_known.items():
            # Unhashable this pass but still on disk: keep the old digest.
            if rel not in known and rel not in ctx.local_files and (s.local_root / rel).exists():
                known[rel] = digest
        record = doc.device(s.device_id)
        record.last_known_files = dict(sorted(known.items()))
        record.last_sync = now
        doc.last_updated = now

        self.store.save(doc)

        if s.prune_empty_groups:
            for side in (LOCAL, REMOTE):
                if ctx.can_write(side):
                    summary["pruned_dirs"] += prune_empty_groups(ctx.root(side))

    def _reconcile_path(self, ctx: PassContext, rel: str):
        s = self.settings
        local = ctx.local_files.get(rel)
        remote = ctx.remote_files.get(rel)
        entry = ctx.doc.files.get(rel)

        reused = False
        if entry is not None and entry.is_deleted:
            observed = [d.digest for d in (local, remote) if d is not None]
            if not is_path_reuse(entry, observed):
                removed_local = ctx.remove(LOCAL, rel, "global_deletion")
                ctx.remove(REMOTE, rel, "global_deletion")
                if removed_local:
                    entry.set_device(s.device_id, "deleted", entry.last_known_hash, None, ctx.now)
                return
            reused = True

        resolution = resolve(local, remote)
        logger.debug("resolved rel=%s direction=%s reason=%s", rel, resolution.direction.value, resolution.reason)

        if resolution.direction == Direction.NONE:
            if local is None:
                return
            if entry is None or reused:
                entry = ctx.doc.entry(rel)
                if reused:
                    entry.revive()
                    ctx.bump("revived")
                entry.append_version(local.digest, s.device_id, "create", ctx.now, s.max_version_history)
            elif entry.last_known_hash != local.digest:
                entry.append_version(local.digest, s.device_id, "update", ctx.now, s.max_version_history)
            entry.last_known_hash = local.digest
            entry.set_device(s.device_id, "synced", local.digest, mtime_iso(local.mtime), ctx.now)
            return

        if resolution.direction == Direction.LOCAL_TO_REMOTE:
            src, dst_side, existing = local, REMOTE, remote
        else:
            src, dst_side, existing = remote, LOCAL, local

        if not ctx.can_write(dst_side):
            logger.debug("copy_blocked rel=%s direction=%s mode=%s", rel, resolution.direction.value, s.sync_mode)
            ctx.bump("skipped")
            return

        if existing is None and (ctx.root(dst_side) / rel).exists():
            # On disk but unhashable this pass; leave it for a later pass.
            logger.warning("copy_skipped_unscanned_target side=%s rel=%s", dst_side, rel)
            ctx.bump("skipped")
            return

        fresh = entry is None or reused
        action: Optional[str]
        if existing is not None:
            reason = "new_file_overwrite" if fresh else "conflict_resolution"
            if not ctx.archive(dst_side, rel, reason):
                return

        if fresh:
            action = "conflict_win" if existing is not None else "create"
        elif entry.last_known_hash == src.digest:
            # Known content reaching a replica that lacks it. Only a local edit this
            # device never reported is a conflict; a stale copy is just catching up.
            mine = entry.devices.get(s.device_id)
            lost_local_edit = (
                dst_side == LOCAL
                and existing is not None
                and mine is not None
                and mine.status == "synced"
                and existing.digest != mine.hash
            )
            action = "conflict_win" if lost_local_edit else None
        elif existing is not None and entry.last_known_hash == existing.digest:
            action = "update"
        elif existing is not None:
            action = "conflict_win"
        else:
            action = "create"

        try:
            copy_preserving(src.full_path, ctx.root(dst_side) / rel)
        except OSError as e:
            logger.error("copy_failed rel=%s direction=%s error=%s", rel, resolution.direction.value, e)
            ctx.bump("errors")
            return

        if entry is None:
            entry = ctx.doc.entry(rel)
        elif reused:
            entry.revive()
            ctx.bump("revived")
            logger.info("path_reused rel=%s file_id=%s", rel, entry.file_id)

        if action is not None:
            entry.append_version(src.digest, s.device_id, action, ctx.now, s.max_version_history)
        if action == "conflict_win":
            ctx.bump("conflicts")
        entry.last_known_hash = src.digest
        entry.set_device(s.device_id, "synced", src.digest, mtime_iso(src.mtime), ctx.now)

        if dst_side == LOCAL:
            ctx.local_after[rel] = src.digest
            ctx.bump("pulled")
        else:
            ctx.bump("pushed")
        logger.info("%s rel=%s action=%s reason=%s", "pulled" if dst_side == LOCAL else "pushed", rel,
                    action or "-", resolution.reason)
