from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from savesync.core.config import DEFAULT_CONFIG_PATH, AppConfig, SyncConfig, load_config
from savesync.core.log_tail import build_log_tail_payload
from savesync.core.logging_setup import setup_logging
from savesync.core.run_history import load_latest_run_summary, record_run
from savesync.engine import EngineSettings, MetadataStore, ReconciliationEngine
from savesync.engine.backup import list_backups, restore_backup
from savesync.engine.errors import BackupError, MetadataLoadError

app = typer.Typer(add_completion=False)
console = Console()

EXIT_RUN_FAILED = 2
EXIT_METADATA_PERSIST_FAILED = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load(config_path: Path) -> AppConfig:
    cfg = load_config(config_path)
    setup_logging(cfg.logging.level, cfg.logging.file)
    return cfg


def _store(settings: EngineSettings) -> MetadataStore:
    return MetadataStore(
        settings.metadata_path,
        backup_root=settings.backup_root,
        max_history=settings.max_version_history,
    )


def exit_code_for(summary: dict) -> int:
    if summary.get("metadata_persist_failed"):
        return EXIT_METADATA_PERSIST_FAILED
    if summary.get("fatal_error") or int(summary.get("errors", 0)) > 0:
        return EXIT_RUN_FAILED
    return 0


@app.command("run-once")
def run_once(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config.yaml."),
    run_type: str = typer.Option("manual_cli", "--run-type", help="Label stored in the run summary."),
    mode: str | None = typer.Option(None, "--mode", help="Override sync mode: bidirectional, push or pull."),
):
    """Run one reconciliation pass and print summary JSON."""
    cfg = _load(config)
    if mode:
        try:
            cfg.sync = SyncConfig.model_validate({**cfg.sync.model_dump(), "sync_mode": mode})
        except ValidationError as e:
            print(json.dumps({"ok": False, "error": f"invalid_mode: {e}"}, ensure_ascii=False, indent=2))
            raise typer.Exit(EXIT_RUN_FAILED)

    settings = EngineSettings.from_config(cfg)
    summary = ReconciliationEngine(settings).run_once(run_type=run_type)
    record_run(summary)
    print(json.dumps(summary, ensure_ascii=False, indent=2))

    code = exit_code_for(summary)
    if code:
        raise typer.Exit(code)


@app.command()
def status(config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Show configuration and last run summary."""
    cfg = load_config(config)
    s = cfg.sync
    summary, source, _parse_error = load_latest_run_summary()

    table = Table(title="savesync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(config))
    table.add_row("device_id", s.device_id)
    table.add_row("sync_mode", s.sync_mode)
    table.add_row("local_root", s.local_root)
    table.add_row("local_root_exists", "yes" if Path(s.local_root).is_dir() else "no")
    table.add_row("remote_root", s.remote_root)
    table.add_row("remote_root_exists", "yes" if Path(s.remote_root).is_dir() else "no")
    table.add_row("backup_root", s.backup_root)
    table.add_row("extensions", f"{s.primary_ext} + {s.companion_ext}")
    table.add_row("max_version_history", str(s.max_version_history))
    poll_interval = int(s.poll_interval_sec or 0)
    table.add_row("auto_sync", "on" if poll_interval > 0 else "off")
    table.add_row("poll_interval_sec", str(poll_interval))
    if summary:
        table.add_row("last_run", f"{summary.get('finished_at') or '-'} ({source})")
        table.add_row("last_run_errors", str(summary.get("errors", 0)))
        if summary.get("fatal_error"):
            table.add_row("last_run_fatal", str(summary["fatal_error"]))
    else:
        table.add_row("last_run", "(none)")
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def files(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
    include_deleted: bool = typer.Option(False, "--all", help="Include tombstoned entries."),
):
    """List file entries from the shared metadata document."""
    settings = EngineSettings.from_config(load_config(config))
    try:
        doc = _store(settings).load()
    except MetadataLoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_RUN_FAILED)

    table = Table(title=str(settings.metadata_path))
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Hash")
    table.add_column("Versions", justify="right")
    table.add_column("Devices")
    for rel, entry in sorted(doc.files.items()):
        if entry.is_deleted and not include_deleted:
            continue
        table.add_row(
            rel,
            entry.global_status,
            (entry.last_known_hash or "")[:12],
            str(len(entry.versions)),
            ", ".join(sorted(entry.devices)),
        )
    console.print(table)


@app.command()
def history(
    rel_path: str = typer.Argument(..., help="Relative path, e.g. group/save.sbp"),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Show the version history of one path."""
    settings = EngineSettings.from_config(load_config(config))
    try:
        doc = _store(settings).load()
    except MetadataLoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_RUN_FAILED)

    entry = doc.files.get(rel_path)
    if entry is None:
        console.print(f"[yellow]no entry for {rel_path}[/yellow]")
        raise typer.Exit(1)

    if json_output:
        print(json.dumps(entry.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=2))
        return

    table = Table(title=f"{rel_path} ({entry.global_status}, fileId={entry.file_id})")
    table.add_column("Timestamp")
    table.add_column("Device")
    table.add_column("Action")
    table.add_column("Hash")
    for v in entry.versions:
        table.add_row(v.timestamp, v.device, v.action, (v.hash or "")[:12])
    console.print(table)


@app.command()
def backups(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
    limit: int = typer.Option(50, "--limit", min=1),
):
    """List archived backups, newest first."""
    cfg = load_config(config)
    rows = list_backups(Path(cfg.sync.backup_root), limit=limit)
    table = Table(title=cfg.sync.backup_root)
    table.add_column("Ref")
    table.add_column("Reason")
    table.add_column("Archived at")
    for row in rows:
        table.add_row(str(row.get("path", row.get("raw", ""))), str(row.get("reason", "")), str(row.get("archived_at", "")))
    console.print(table)


@app.command()
def restore(
    ref: str = typer.Argument(..., help="Backup ref as listed by `backups`, e.g. 20260101120000/group/save.sbp"),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
):
    """Copy a backup back into the local replica; the next pass syncs it."""
    cfg = _load(config)
    try:
        target = restore_backup(Path(cfg.sync.backup_root), ref, Path(cfg.sync.local_root))
    except BackupError as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(EXIT_RUN_FAILED)
    print(json.dumps({"ok": True, "restored_to": str(target)}, ensure_ascii=False, indent=2))


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    print(json.dumps(cfg.model_dump(), ensure_ascii=False, indent=2))


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "local_root_exists": False,
            "remote_root_exists": False,
            "roots_distinct": False,
            "backup_root_ready": False,
            "backup_outside_replicas": False,
            "extensions_distinct": False,
            "metadata_readable": False,
            "web_port_valid": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        print(json.dumps(out, ensure_ascii=False, indent=2))
        if strict:
            raise typer.Exit(2)
        return

    s = cfg.sync
    local_root = Path(s.local_root).expanduser().resolve(strict=False)
    remote_root = Path(s.remote_root).expanduser().resolve(strict=False)
    backup_root = Path(s.backup_root).expanduser().resolve(strict=False)

    out["checks"]["local_root_exists"] = local_root.is_dir()
    if not out["checks"]["local_root_exists"]:
        out["warnings"].append(f"local_root_missing: {local_root}")
    out["checks"]["remote_root_exists"] = remote_root.is_dir()
    if not out["checks"]["remote_root_exists"]:
        out["warnings"].append(f"remote_root_missing: {remote_root}")

    out["checks"]["roots_distinct"] = local_root != remote_root
    if not out["checks"]["roots_distinct"]:
        out["errors"].append("local_root_equals_remote_root")

    out["checks"]["backup_outside_replicas"] = not any(
        backup_root == root or root in backup_root.parents for root in (local_root, remote_root)
    )
    if not out["checks"]["backup_outside_replicas"]:
        out["errors"].append(f"backup_root_inside_replica: {backup_root}")

    try:
        backup_root.mkdir(parents=True, exist_ok=True)
        out["checks"]["backup_root_ready"] = True
    except OSError as e:
        out["errors"].append(f"backup_root_unavailable: {e}")

    out["checks"]["extensions_distinct"] = s.primary_ext != s.companion_ext
    if not out["checks"]["extensions_distinct"]:
        out["errors"].append(f"extensions_not_distinct: {s.primary_ext}")

    settings = EngineSettings.from_config(cfg)
    try:
        _store(settings).load()
        out["checks"]["metadata_readable"] = True
    except MetadataLoadError as e:
        out["errors"].append(f"metadata_unreadable: {e}")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    poll_interval = int(s.poll_interval_sec or 0)
    if 0 < poll_interval < 10:
        out["warnings"].append(f"poll_interval_too_short: {poll_interval} (<10 races the cloud client)")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    print(json.dumps(out, ensure_ascii=False, indent=2))
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command("logs-tail")
def logs_tail(
    n: int = typer.Option(200, "--n", min=1),
    level: str | None = typer.Option(None, "--level", help="Filter by log level (e.g. INFO)."),
    module: str | None = typer.Option(None, "--module", help="Filter by logger/module name."),
    contains: str | None = typer.Option(None, "--contains", help="Only lines whose message contains this text."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Tail service log file."""
    cfg = load_config()
    payload = build_log_tail_payload(cfg.logging.file, n=n, level=level, module=module, contains=contains)
    if json_output:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    print(payload.get("tail", ""))


@app.command()
def serve():
    """Start the web service with the periodic scheduler."""
    from savesync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
