"""Durable reconciliation state shared between devices.

The document lives inside the shared replica and is replicated by the
external cloud client, so every device reads and rewrites the same file.
It is parsed strictly: anything that does not match the current schema (or
a known legacy schema that can be migrated) is refused instead of guessed.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MetadataLoadError, MetadataPersistError

logger = logging.getLogger("metadata")

SCHEMA_VERSION = "2.0"
LEGACY_SCHEMA_VERSION = "1.0"

VersionAction = Literal["create", "update", "delete", "conflict_win"]


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def mtime_iso(mtime: float) -> str:
    return datetime.fromtimestamp(mtime).isoformat(timespec="seconds")


def new_file_id() -> str:
    return str(uuid.uuid4())


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class DeviceStatus(_Strict):
    status: Literal["synced", "deleted"]
    hash: Optional[str] = None
    last_modified: Optional[str] = Field(default=None, alias="lastModified")
    last_seen: Optional[str] = Field(default=None, alias="lastSeen")


class VersionEntry(_Strict):
    hash: Optional[str] = None
    timestamp: str
    device: str
    action: VersionAction


class FileEntry(_Strict):
    file_id: str = Field(default_factory=new_file_id, alias="fileId")
    global_status: Literal["active", "deleted"] = Field(default="active", alias="globalStatus")
    deleted_by: Optional[str] = Field(default=None, alias="deletedBy")
    deleted_timestamp: Optional[str] = Field(default=None, alias="deletedTimestamp")
    last_known_hash: Optional[str] = Field(default=None, alias="lastKnownHash")
    devices: Dict[str, DeviceStatus] = Field(default_factory=dict)
    versions: List[VersionEntry] = Field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.global_status == "deleted"

    def append_version(self, digest: Optional[str], device: str, action: VersionAction, timestamp: str,
                       max_history: int):
        self.versions.append(VersionEntry(hash=digest, timestamp=timestamp, device=device, action=action))
        if len(self.versions) > max_history:
            del self.versions[: len(self.versions) - max_history]

    def set_device(self, device: str, status: str, digest: Optional[str], last_modified: Optional[str],
                   seen_at: str) -> bool:
        """Record what `device` holds; returns False when nothing changed."""
        current = self.devices.get(device)
        if (
            current is not None
            and current.status == status
            and current.hash == digest
            and current.last_modified == last_modified
        ):
            return False
        self.devices[device] = DeviceStatus(
            status=status, hash=digest, last_modified=last_modified, last_seen=seen_at
        )
        return True

    def tombstone(self, device: str, digest: Optional[str], timestamp: str, max_history: int):
        self.global_status = "deleted"
        self.deleted_by = device
        self.deleted_timestamp = timestamp
        if digest:
            self.last_known_hash = digest
        self.set_device(device, "deleted", digest, None, timestamp)
        self.append_version(digest, device, "delete", timestamp, max_history)

    def revive(self):
        """Start a new lifecycle for a previously deleted path; history is kept."""
        self.global_status = "active"
        self.deleted_by = None
        self.deleted_timestamp = None
        self.file_id = new_file_id()


class DeviceRecord(_Strict):
    last_sync: Optional[str] = Field(default=None, alias="lastSync")
    last_known_files: Dict[str, str] = Field(default_factory=dict, alias="lastKnownFiles")


class MetadataDocument(_Strict):
    version: Literal["2.0"] = SCHEMA_VERSION
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    files: Dict[str, FileEntry] = Field(default_factory=dict)
    devices: Dict[str, DeviceRecord] = Field(default_factory=dict)

    def device(self, device_id: str) -> DeviceRecord:
        record = self.devices.get(device_id)
        if record is None:
            record = DeviceRecord()
            self.devices[device_id] = record
        return record

    def entry(self, rel_path: str) -> FileEntry:
        entry = self.files.get(rel_path)
        if entry is None:
            entry = FileEntry()
            self.files[rel_path] = entry
        return entry

    def tombstones(self) -> Dict[str, FileEntry]:
        return {rel: e for rel, e in self.files.items() if e.is_deleted}

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Schema 1.0: one flat record per path, a boolean deletion flag and no history.


class LegacyFileRecord(_Strict):
    hash: Optional[str] = None
    last_modified: Optional[str] = Field(default=None, alias="lastModified")
    device: Optional[str] = None
    deleted: bool = False
    deleted_by: Optional[str] = Field(default=None, alias="deletedBy")
    deleted_at: Optional[str] = Field(default=None, alias="deletedAt")


class LegacyDeviceRecord(_Strict):
    last_sync: Optional[str] = Field(default=None, alias="lastSync")
    files: Dict[str, str] = Field(default_factory=dict)


class LegacyDocument(_Strict):
    version: Literal["1.0"] = LEGACY_SCHEMA_VERSION
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    files: Dict[str, LegacyFileRecord] = Field(default_factory=dict)
    devices: Dict[str, LegacyDeviceRecord] = Field(default_factory=dict)


def migrate_legacy(legacy: LegacyDocument, max_history: int) -> MetadataDocument:
    doc = MetadataDocument(last_updated=legacy.last_updated)
    stamp = legacy.last_updated or now_iso()

    for rel, old in legacy.files.items():
        entry = FileEntry(last_known_hash=old.hash)
        device = old.device or "unknown"
        seen = old.last_modified or stamp
        entry.append_version(old.hash, device, "create", seen, max_history)
        if old.deleted:
            entry.tombstone(old.deleted_by or device, old.hash, old.deleted_at or stamp, max_history)
        else:
            entry.set_device(device, "synced", old.hash, old.last_modified, seen)
        doc.files[rel] = entry

    for device_id, old_device in legacy.devices.items():
        doc.devices[device_id] = DeviceRecord(
            last_sync=old_device.last_sync,
            last_known_files=dict(old_device.files),
        )
    return doc


class MetadataStore:
    def __init__(self, path: Path, backup_root: Optional[Path] = None, max_history: int = 10):
        self.path = Path(path)
        self.backup_root = Path(backup_root) if backup_root else None
        self.max_history = max_history

    def _read_raw(self) -> Dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MetadataLoadError(f"metadata_unreadable: {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise MetadataLoadError(f"metadata_not_object: {self.path}")
        return raw

    def archive_document(self, label: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        if self.backup_root is not None:
            dest = self.backup_root / "metadata" / stamp / self.path.name
        else:
            dest = self.path.with_name(f"{self.path.name}.{label}.{stamp}.bak")
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(str(self.path), str(dest))
        return dest

    def load(self) -> MetadataDocument:
        if not self.path.exists():
            logger.info("metadata_missing path=%s starting_empty", self.path)
            return MetadataDocument()

        raw = self._read_raw()
        version = raw.get("version", LEGACY_SCHEMA_VERSION)

        if version == SCHEMA_VERSION:
            try:
                return MetadataDocument.model_validate(raw)
            except ValidationError as e:
                raise MetadataLoadError(f"metadata_invalid: {e}") from e

        if version == LEGACY_SCHEMA_VERSION:
            try:
                legacy = LegacyDocument.model_validate(raw)
            except ValidationError as e:
                raise MetadataLoadError(f"metadata_legacy_invalid: {e}") from e
            try:
                archived = self.archive_document("v1")
            except OSError as e:
                raise MetadataLoadError(f"metadata_archive_failed: {e}") from e
            logger.warning("metadata_migrated from=%s to=%s archived=%s", version, SCHEMA_VERSION, archived)
            return migrate_legacy(legacy, self.max_history)

        raise MetadataLoadError(f"metadata_unknown_version: {version!r}")

    def save(self, doc: MetadataDocument):
        """Publish `doc` atomically: readers see the old or the new file, never a mix."""
        payload = json.dumps(doc.to_json(), ensure_ascii=False, indent=2)
        tmp_path: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise MetadataPersistError(f"metadata_persist_failed: {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                Path(tmp_path).unlink(missing_ok=True)
