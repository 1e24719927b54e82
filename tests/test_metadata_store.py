import json
import os
from pathlib import Path

import pytest

from savesync.engine.errors import MetadataLoadError, MetadataPersistError
from savesync.engine.metadata import FileEntry, MetadataDocument, MetadataStore


def _store(tmp_path: Path) -> MetadataStore:
    return MetadataStore(tmp_path / "shared" / "sync_metadata.json", backup_root=tmp_path / "backups", max_history=3)


def test_missing_document_loads_empty(tmp_path: Path):
    doc = _store(tmp_path).load()
    assert doc.version == "2.0"
    assert doc.files == {}
    assert doc.devices == {}


def test_save_then_load_uses_camel_case_keys(tmp_path: Path):
    store = _store(tmp_path)
    doc = MetadataDocument()
    entry = doc.entry("G/a.sbp")
    entry.last_known_hash = "h1"
    entry.set_device("A", "synced", "h1", "2026-01-01T00:00:00", "2026-01-01T00:00:01")
    entry.append_version("h1", "A", "create", "2026-01-01T00:00:01", 3)
    doc.device("A").last_known_files["G/a.sbp"] = "h1"
    store.save(doc)

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    stored = raw["files"]["G/a.sbp"]
    assert raw["version"] == "2.0"
    assert stored["globalStatus"] == "active"
    assert stored["lastKnownHash"] == "h1"
    assert stored["devices"]["A"]["lastModified"] == "2026-01-01T00:00:00"
    assert raw["devices"]["A"]["lastKnownFiles"] == {"G/a.sbp": "h1"}

    loaded = store.load()
    assert loaded.to_json() == doc.to_json()
    assert not list(store.path.parent.glob("*.tmp"))


def test_failed_save_keeps_previous_document(monkeypatch, tmp_path: Path):
    store = _store(tmp_path)
    store.save(MetadataDocument())
    before = store.path.read_text(encoding="utf-8")

    def _boom(_src, _dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)
    doc = MetadataDocument()
    doc.entry("G/a.sbp")
    with pytest.raises(MetadataPersistError):
        store.save(doc)

    assert store.path.read_text(encoding="utf-8") == before
    assert not list(store.path.parent.glob("*.tmp"))


def test_unknown_keys_are_rejected(tmp_path: Path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"version": "2.0", "files": {}, "devices": {}, "extra": 1}), encoding="utf-8")
    with pytest.raises(MetadataLoadError):
        store.load()


def test_unknown_version_is_rejected(tmp_path: Path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"version": "9.9", "files": {}, "devices": {}}), encoding="utf-8")
    with pytest.raises(MetadataLoadError, match="unknown_version"):
        store.load()


def test_corrupt_json_is_rejected(tmp_path: Path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(MetadataLoadError):
        store.load()


def test_legacy_document_is_archived_and_migrated(tmp_path: Path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    legacy = {
        "version": "1.0",
        "lastUpdated": "2025-12-01T10:00:00",
        "files": {
            "G/a.sbp": {"hash": "h1", "lastModified": "2025-12-01T09:00:00", "device": "A"},
            "G/b.sbp": {"hash": "h2", "device": "B", "deleted": True, "deletedBy": "B",
                        "deletedAt": "2025-12-01T09:30:00"},
        },
        "devices": {"A": {"lastSync": "2025-12-01T10:00:00", "files": {"G/a.sbp": "h1"}}},
    }
    store.path.write_text(json.dumps(legacy), encoding="utf-8")

    doc = store.load()

    archived = list((tmp_path / "backups" / "metadata").glob("*/sync_metadata.json"))
    assert len(archived) == 1
    assert json.loads(archived[0].read_text(encoding="utf-8")) == legacy

    a = doc.files["G/a.sbp"]
    assert a.global_status == "active"
    assert a.devices["A"].hash == "h1"
    assert [v.action for v in a.versions] == ["create"]

    b = doc.files["G/b.sbp"]
    assert b.is_deleted
    assert b.deleted_by == "B"
    assert b.last_known_hash == "h2"
    assert [v.action for v in b.versions] == ["create", "delete"]

    assert doc.devices["A"].last_known_files == {"G/a.sbp": "h1"}


def test_version_history_is_bounded_fifo():
    entry = FileEntry()
    for i in range(5):
        entry.append_version(f"h{i}", "A", "update", f"2026-01-01T00:00:0{i}", 3)
    assert [v.hash for v in entry.versions] == ["h2", "h3", "h4"]


def test_set_device_reports_unchanged():
    entry = FileEntry()
    assert entry.set_device("A", "synced", "h1", "t1", "s1") is True
    assert entry.set_device("A", "synced", "h1", "t1", "s2") is False
    assert entry.devices["A"].last_seen == "s1"
    assert entry.set_device("A", "synced", "h2", "t2", "s3") is True


def test_revive_starts_new_lifecycle():
    entry = FileEntry()
    old_id = entry.file_id
    entry.tombstone("A", "h1", "2026-01-01T00:00:00", 10)
    entry.revive()
    assert entry.global_status == "active"
    assert entry.deleted_by is None
    assert entry.file_id != old_id
    assert [v.action for v in entry.versions] == ["delete"]
