from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

from savesync.core import config as config_module
from savesync.core.config import AppConfig
from savesync.web import api as api_module


def _build_client() -> TestClient:
    app = FastAPI()
    app.include_router(api_module.router)
    return TestClient(app)


def _cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.sync.local_root = str(tmp_path / "local")
    cfg.sync.remote_root = str(tmp_path / "shared")
    cfg.sync.backup_root = str(tmp_path / "backups")
    cfg.sync.device_id = "A"
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    return cfg


def _isolate(monkeypatch, tmp_path: Path) -> AppConfig:
    cfg = _cfg(tmp_path)
    monkeypatch.setattr(api_module, "load_config", lambda: cfg)
    monkeypatch.setattr(config_module, "RUN_HISTORY_PATH", tmp_path / "runtime" / "run_history.jsonl")
    monkeypatch.setattr(config_module, "LAST_RUN_ONCE_PATH", tmp_path / "runtime" / "last_run_once.json")
    return cfg


def test_healthz_returns_alive():
    client = _build_client()
    resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_readyz_returns_200_when_checks_pass(monkeypatch, tmp_path: Path):
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setattr(
        api_module,
        "_scheduler_state_snapshot",
        lambda: {
            "running": True,
            "enabled": True,
            "configured_interval_sec": 300,
            "effective_interval_sec": 300,
            "last_started_at": None,
            "last_finished_at": None,
            "next_run_at": None,
            "next_run_in_sec": None,
            "last_result": "success",
            "last_error": None,
            "run_count": 1,
            "skipped_busy_count": 0,
        },
    )

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["checks"]["config_load"] is True
    assert payload["checks"]["backup_root_ready"] is True
    assert payload["checks"]["log_parent_ready"] is True
    assert payload["checks"]["metadata_readable"] is True
    assert payload["checks"]["scheduler_running"] is True
    assert "local_root_missing" in payload["warnings"]
    assert payload["errors"] == []


def test_readyz_returns_503_when_config_load_fails(monkeypatch):
    def _raise_load_config():
        raise RuntimeError("boom")

    monkeypatch.setattr(api_module, "load_config", _raise_load_config)
    monkeypatch.setattr(api_module, "_scheduler_state_snapshot", lambda: {"running": False, "enabled": False})

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 503
    payload = resp.json()
    assert payload["ok"] is False
    assert payload["checks"]["config_load"] is False
    assert any("config_load_failed" in err for err in payload["errors"])


def test_readyz_returns_503_when_metadata_corrupt(monkeypatch, tmp_path: Path):
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setattr(api_module, "_scheduler_state_snapshot", lambda: {"running": False, "enabled": False})
    (tmp_path / "shared").mkdir()
    (tmp_path / "shared" / "sync_metadata.json").write_text("[]", encoding="utf-8")

    resp = _build_client().get("/api/readyz")

    assert resp.status_code == 503
    assert resp.json()["checks"]["metadata_readable"] is False


def test_run_once_then_files_and_history(monkeypatch, tmp_path: Path):
    _isolate(monkeypatch, tmp_path)
    save = tmp_path / "local" / "G" / "a.sbp"
    save.parent.mkdir(parents=True)
    save.write_bytes(b"v1")
    client = _build_client()

    resp = client.post("/api/actions/run-once")
    assert resp.status_code == 200
    assert resp.json()["pushed"] == 1

    files = client.get("/api/files").json()
    assert files["count"] == 1
    assert files["items"][0]["path"] == "G/a.sbp"
    assert files["items"][0]["devices"] == ["A"]

    history = client.get("/api/files/history", params={"path": "G/a.sbp"}).json()
    assert [v["action"] for v in history["versions"]] == ["create"]

    assert client.get("/api/files/history", params={"path": "G/none.sbp"}).status_code == 404

    runs = client.get("/api/history").json()
    assert runs["count"] == 1
    assert runs["items"][0]["run_type"] == "manual_web"

    last = client.get("/api/status/run-once").json()
    assert last["exists"] is True
    assert last["summary_source"] == "last_run_once"


def test_run_once_returns_409_when_busy(monkeypatch, tmp_path: Path):
    _isolate(monkeypatch, tmp_path)
    client = _build_client()
    assert api_module.SYNC_RUN_LOCK.acquire(blocking=False)
    try:
        resp = client.post("/api/actions/run-once")
    finally:
        api_module.SYNC_RUN_LOCK.release()
    assert resp.status_code == 409
    assert resp.json()["detail"] == "sync_busy"


def test_scheduler_counters_and_interval_bounds(monkeypatch):
    monkeypatch.setattr(api_module, "_scheduler_state", dict(api_module._scheduler_state))

    api_module._scheduler_state_bump("run_count", last_result="success")
    api_module._scheduler_state_bump("run_count")
    snap = api_module._scheduler_state_snapshot()

    assert snap["run_count"] == 2
    assert snap["last_result"] == "success"
    assert api_module._sanitize_poll_interval(0) == 0
    assert api_module._sanitize_poll_interval(3) == api_module.SCHEDULER_MIN_INTERVAL_SEC
    assert api_module._sanitize_poll_interval(10**6) == api_module.SCHEDULER_MAX_INTERVAL_SEC
