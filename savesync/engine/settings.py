from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import AppConfig


class EngineSettings(BaseModel):
    """Everything one pass needs, fixed for the lifetime of the pass."""

    model_config = ConfigDict(frozen=True)

    local_root: Path
    remote_root: Path
    backup_root: Path
    device_id: str
    sync_mode: Literal["bidirectional", "push", "pull"] = "bidirectional"
    max_version_history: int = Field(default=10, ge=1)
    primary_ext: str = ".sbp"
    companion_ext: str = ".sbc"
    metadata_file: str = "sync_metadata.json"
    allow_missing_backup: bool = False
    scan_workers: int = 1
    prune_empty_groups: bool = True
    pin_command: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "EngineSettings":
        s = cfg.sync
        return cls(
            local_root=Path(s.local_root).expanduser(),
            remote_root=Path(s.remote_root).expanduser(),
            backup_root=Path(s.backup_root).expanduser(),
            device_id=s.device_id,
            sync_mode=s.sync_mode,
            max_version_history=s.max_version_history,
            primary_ext=s.primary_ext,
            companion_ext=s.companion_ext,
            metadata_file=s.metadata_file,
            allow_missing_backup=s.allow_missing_backup,
            scan_workers=s.scan_workers,
            prune_empty_groups=s.prune_empty_groups,
            pin_command=tuple(s.pin_command),
        )

    @property
    def metadata_path(self) -> Path:
        return self.remote_root / self.metadata_file

    @property
    def extensions(self) -> List[str]:
        return [self.primary_ext, self.companion_ext]

    @property
    def can_push(self) -> bool:
        return self.sync_mode in ("bidirectional", "push")

    @property
    def can_pull(self) -> bool:
        return self.sync_mode in ("bidirectional", "pull")
