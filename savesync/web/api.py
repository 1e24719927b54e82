from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from savesync.core import config as config_module
from savesync.core.config import load_config
from savesync.core.log_tail import build_log_tail_payload
from savesync.core.run_history import load_latest_run_summary, read_run_history, record_run
from savesync.engine import EngineSettings, MetadataStore, ReconciliationEngine
from savesync.engine.errors import MetadataLoadError

router = APIRouter(prefix="/api")

SYNC_RUN_LOCK = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400

_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "enabled": False,
    "configured_interval_sec": 0,
    "effective_interval_sec": 0,
    "last_started_at": None,
    "last_finished_at": None,
    "last_result": None,
    "last_error": None,
    "next_run_at": None,
    "skipped_busy_count": 0,
    "run_count": 0,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sanitize_poll_interval(interval: int) -> int:
    if interval <= 0:
        return 0
    return min(max(interval, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _iso_from_ts(ts: object) -> str | None:
    if not isinstance(ts, (int, float)) or isinstance(ts, bool):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_bump(key: str, **kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state[key] = int(_scheduler_state.get(key) or 0) + 1
        _scheduler_state.update(kwargs)


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)

    next_run_at = snap.get("next_run_at")
    if isinstance(next_run_at, (int, float)):
        next_run_in_sec: int | None = max(int(next_run_at - time.time()), 0)
    else:
        next_run_in_sec = None

    return {
        "running": bool(snap.get("running")),
        "enabled": bool(snap.get("enabled")),
        "configured_interval_sec": int(snap.get("configured_interval_sec") or 0),
        "effective_interval_sec": int(snap.get("effective_interval_sec") or 0),
        "last_started_at": _iso_from_ts(snap.get("last_started_at")),
        "last_finished_at": _iso_from_ts(snap.get("last_finished_at")),
        "next_run_at": _iso_from_ts(next_run_at),
        "next_run_in_sec": next_run_in_sec,
        "last_result": snap.get("last_result"),
        "last_error": snap.get("last_error"),
        "run_count": int(snap.get("run_count") or 0),
        "skipped_busy_count": int(snap.get("skipped_busy_count") or 0),
    }


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


def _build_engine() -> ReconciliationEngine:
    cfg = load_config()
    return ReconciliationEngine(EngineSettings.from_config(cfg))


def _run_sync_once_and_record(run_type: str) -> dict:
    summary = _build_engine().run_once(run_type=run_type)
    record_run(summary)
    return summary


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "local_root_exists": False,
        "remote_root_exists": False,
        "backup_root_ready": False,
        "log_parent_ready": False,
        "metadata_readable": False,
        "scheduler_running": False,
        "scheduler_enabled": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))
    checks["scheduler_enabled"] = bool(scheduler.get("enabled"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["local_root_exists"] = Path(cfg.sync.local_root).is_dir()
        if not checks["local_root_exists"]:
            warnings.append("local_root_missing")
        checks["remote_root_exists"] = Path(cfg.sync.remote_root).is_dir()
        if not checks["remote_root_exists"]:
            warnings.append("remote_root_missing")

        try:
            Path(cfg.sync.backup_root).mkdir(parents=True, exist_ok=True)
            checks["backup_root_ready"] = True
        except OSError as e:
            errors.append(f"backup_root_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

        settings = EngineSettings.from_config(cfg)
        try:
            MetadataStore(settings.metadata_path, backup_root=settings.backup_root).load()
            checks["metadata_readable"] = True
        except MetadataLoadError as e:
            errors.append(f"metadata_unreadable: {e}")

    if checks["scheduler_enabled"] and not checks["scheduler_running"]:
        warnings.append("scheduler_enabled_but_not_running")

    ok = (
        checks["config_load"]
        and checks["backup_root_ready"]
        and checks["log_parent_ready"]
        and checks["metadata_readable"]
    )
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    logger = logging.getLogger("scheduler")
    next_run_at_ts: float | None = None
    previous_effective_interval: int | None = None
    _scheduler_state_update(running=True, last_error=None, last_result=None)
    logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            cfg = load_config()
            configured_interval = cfg.sync.poll_interval_sec
            effective_interval = _sanitize_poll_interval(configured_interval)
            enabled = configured_interval > 0

            _scheduler_state_update(
                enabled=enabled,
                configured_interval_sec=configured_interval,
                effective_interval_sec=effective_interval,
            )

            if not enabled:
                next_run_at_ts = None
                previous_effective_interval = None
                _scheduler_state_update(next_run_at=None)
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue

            now_ts = time.time()
            if next_run_at_ts is None:
                next_run_at_ts = now_ts + effective_interval
            elif previous_effective_interval is not None and previous_effective_interval != effective_interval:
                next_run_at_ts = now_ts + effective_interval
            previous_effective_interval = effective_interval
            _scheduler_state_update(next_run_at=next_run_at_ts)

            wait_sec = next_run_at_ts - now_ts
            if wait_sec > 0:
                await _wait_stop_or_timeout(stop_event, min(wait_sec, SCHEDULER_POLL_GRANULARITY_SEC))
                continue

            if not SYNC_RUN_LOCK.acquire(blocking=False):
                next_run_at_ts = time.time() + effective_interval
                _scheduler_state_bump(
                    "skipped_busy_count",
                    last_finished_at=time.time(),
                    last_result="skipped_busy",
                    last_error="sync_busy",
                    next_run_at=next_run_at_ts,
                )
                logger.warning("scheduled_sync_skipped sync_busy")
                continue

            _scheduler_state_update(last_started_at=time.time(), last_result="running", last_error=None)
            try:
                summary = await asyncio.to_thread(_run_sync_once_and_record, "scheduled")
                errors = int(summary.get("errors", 0))
                fatal = summary.get("fatal_error")
                _scheduler_state_bump(
                    "run_count",
                    last_finished_at=time.time(),
                    last_result="warning" if (fatal or errors > 0) else "success",
                    last_error=str(fatal or "") if fatal else (f"errors={errors}" if errors > 0 else None),
                )
                logger.info(
                    "scheduled_sync_completed errors=%s pushed=%s pulled=%s conflicts=%s",
                    errors,
                    summary.get("pushed", 0),
                    summary.get("pulled", 0),
                    summary.get("conflicts", 0),
                )
            except Exception as e:
                _scheduler_state_bump(
                    "run_count",
                    last_finished_at=time.time(),
                    last_result="failed",
                    last_error=str(e),
                )
                logger.exception("scheduled_sync_failed: %s", e)
            finally:
                SYNC_RUN_LOCK.release()
                next_run_at_ts = time.time() + effective_interval
                _scheduler_state_update(next_run_at=next_run_at_ts)
    finally:
        _scheduler_state_update(running=False, next_run_at=None)
        logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="savesync_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False, next_run_at=None)


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/config")
def get_config():
    cfg = load_config()
    return {
        **cfg.model_dump(),
        "_scheduler": {
            "configured_poll_interval_sec": cfg.sync.poll_interval_sec,
            "effective_poll_interval_sec": _sanitize_poll_interval(cfg.sync.poll_interval_sec),
            "auto_sync_enabled": cfg.sync.poll_interval_sec > 0,
        },
    }


@router.get("/files")
def list_files(include_deleted: bool = False):
    settings = EngineSettings.from_config(load_config())
    try:
        doc = MetadataStore(settings.metadata_path, backup_root=settings.backup_root).load()
    except MetadataLoadError as e:
        raise HTTPException(status_code=503, detail=f"metadata_unreadable: {e}")

    items: list[dict[str, Any]] = []
    for rel, entry in sorted(doc.files.items()):
        if entry.is_deleted and not include_deleted:
            continue
        items.append(
            {
                "path": rel,
                "fileId": entry.file_id,
                "globalStatus": entry.global_status,
                "lastKnownHash": entry.last_known_hash,
                "versions": len(entry.versions),
                "devices": sorted(entry.devices),
            }
        )
    return {
        "path": str(settings.metadata_path),
        "last_updated": doc.last_updated,
        "count": len(items),
        "items": items,
    }


@router.get("/files/history")
def file_history(path: str):
    settings = EngineSettings.from_config(load_config())
    try:
        doc = MetadataStore(settings.metadata_path, backup_root=settings.backup_root).load()
    except MetadataLoadError as e:
        raise HTTPException(status_code=503, detail=f"metadata_unreadable: {e}")
    entry = doc.files.get(path)
    if entry is None:
        raise HTTPException(status_code=404, detail="file_not_found")
    return {"path": path, **entry.model_dump(mode="json", by_alias=True)}


@router.get("/logs")
def get_logs(n: int = 200, level: str | None = None, module: str | None = None, contains: str | None = None):
    cfg = load_config()
    return build_log_tail_payload(cfg.logging.file, n=n, level=level, module=module, contains=contains)


@router.get("/history")
def get_history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = read_run_history(limit=limit_sanitized)
    return {
        "path": str(config_module.RUN_HISTORY_PATH),
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }


@router.get("/status/scheduler")
def scheduler_status():
    return {
        "ok": True,
        "checked_at": _now_iso(),
        **_scheduler_state_snapshot(),
    }


@router.get("/status/run-once")
def last_run_once_status():
    summary, source, parse_error = load_latest_run_summary()
    out: dict[str, Any] = {
        "exists": config_module.LAST_RUN_ONCE_PATH.exists(),
        "path": str(config_module.LAST_RUN_ONCE_PATH),
        "summary": summary,
        "summary_source": source,
    }
    if parse_error:
        out["error"] = parse_error
    return out


@router.post("/actions/run-once")
def run_once():
    """Run one reconciliation pass now and return its summary."""
    if not SYNC_RUN_LOCK.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="sync_busy")
    try:
        summary = _run_sync_once_and_record("manual_web")
    finally:
        SYNC_RUN_LOCK.release()
    return summary
