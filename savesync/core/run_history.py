from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from savesync.core import config as config_module


def _history_path() -> Path:
    return config_module.RUN_HISTORY_PATH


def _last_run_path() -> Path:
    return config_module.LAST_RUN_ONCE_PATH


def record_run(summary: dict) -> None:
    """Persist a pass summary as the latest run and append it to the history."""
    last_path = _last_run_path()
    last_path.parent.mkdir(parents=True, exist_ok=True)
    last_path.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")

    history_path = _history_path()
    history_path.parent.mkdir(parents=True, exist_ok=True)
    with history_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(summary, ensure_ascii=False))
        f.write("\n")


def read_run_history(limit: int = 50) -> list[dict]:
    history_path = _history_path()
    if limit <= 0 or not history_path.exists():
        return []

    lines = history_path.read_text(encoding="utf-8", errors="replace").splitlines()
    out: list[dict] = []
    for line in reversed(lines):
        if len(out) >= limit:
            break
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = {"raw": raw, "parse_error": True}
        if isinstance(payload, dict):
            out.append(payload)
    return out


def load_latest_run_summary() -> tuple[dict[str, Any] | None, str, str | None]:
    """
    Return latest run summary with source:
    - last_run_once: runtime/last_run_once.json
    - history_fallback: runtime/run_history.jsonl latest item
    - none: no summary available
    """
    parse_error: str | None = None
    last_path = _last_run_path()
    if last_path.exists():
        try:
            payload = json.loads(last_path.read_text(encoding="utf-8"))
            if isinstance(payload, dict):
                return payload, "last_run_once", None
            parse_error = "last_run_once_not_object"
        except (OSError, json.JSONDecodeError) as e:
            parse_error = str(e)

    items = read_run_history(limit=1)
    if items:
        return items[0], "history_fallback", parse_error
    return None, "none", parse_error
