from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(os.environ.get("SAVESYNC_HOME", str(Path.home() / ".savesync"))).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
LAST_RUN_ONCE_PATH = RUNTIME_DIR / "last_run_once.json"
RUN_HISTORY_PATH = RUNTIME_DIR / "run_history.jsonl"


def _default_device_id() -> str:
    return socket.gethostname() or "device"


class SyncConfig(BaseModel):
    local_root: str = str(PROJECT_ROOT / "local")
    remote_root: str = str(PROJECT_ROOT / "shared")
    backup_root: str = str(PROJECT_ROOT / "backups")
    device_id: str = Field(default_factory=_default_device_id)
    # - bidirectional: both replicas may be written
    # - push: only the shared replica is written
    # - pull: only the local replica is written
    sync_mode: Literal["bidirectional", "push", "pull"] = "bidirectional"
    max_version_history: int = Field(default=10, ge=1, le=1000)
    primary_ext: str = ".sbp"
    companion_ext: str = ".sbc"
    metadata_file: str = "sync_metadata.json"
    # 0 means disabled; positive values are seconds between scheduled runs.
    poll_interval_sec: int = Field(default=300, ge=0, le=86400)
    # Proceed with overwrites/removals even when the backup copy failed.
    allow_missing_backup: bool = False
    scan_workers: int = Field(default=1, ge=1, le=32)
    prune_empty_groups: bool = True
    # argv run against the shared root to keep it materialized, e.g.
    # ["attrib", "+P", "{path}", "/S", "/D"]. Empty disables it.
    pin_command: list[str] = Field(default_factory=list)

    @field_validator("primary_ext", "companion_ext")
    @classmethod
    def _dotted_ext(cls, value: str) -> str:
        raw = (value or "").strip().lower()
        if not raw:
            raise ValueError("extension must not be empty")
        return raw if raw.startswith(".") else f".{raw}"

    @field_validator("local_root", "remote_root", "backup_root")
    @classmethod
    def _expand_user(cls, value: str) -> str:
        raw = (value or "").strip()
        return str(Path(raw).expanduser()) if raw else raw

    @field_validator("device_id")
    @classmethod
    def _device_id_not_blank(cls, value: str) -> str:
        raw = (value or "").strip()
        return raw or _default_device_id()


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")

    @field_validator("file")
    @classmethod
    def _expand_user(cls, value: str) -> str:
        return str(Path(value).expanduser()) if value else value


class AppConfig(BaseModel):
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Web UI
    web_bind_host: str = "127.0.0.1"  # can be set to LAN IP
    web_port: int = 8766


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.sync.backup_root).mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg
