"""CLI entrypoint for the config protector."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Optional

import typer

from config_protector.core.config import Settings, get_settings
from config_protector.core.errors import ProtectorError
from config_protector.core.logging import configure_logging
from config_protector.core.metrics import serve_metrics
from config_protector.guard.backups import BackupStore
from config_protector.guard.daemon import (
    ProtectorDaemon,
    remove_pid_file,
    running_pid,
    write_pid_file,
)
from config_protector.guard.engine import Action, ProtectionState, RecoveryEngine
from config_protector.guard.fixer import fix_target
from config_protector.guard.report import build_report
from config_protector.utils.time import format_duration

app = typer.Typer(name="ccp", help="Config protector command-line interface")


def _load_settings(config: Optional[Path]) -> Settings:
    if config is not None:
        return Settings.from_yaml(config)
    return get_settings()


def _echo(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Subscribe to filesystem change events"),
) -> None:
    """Run the protection daemon in the foreground until interrupted."""
    settings = _load_settings(config)
    configure_logging(settings)
    if settings.metrics_port:
        serve_metrics(settings.metrics_port)
    daemon = ProtectorDaemon.from_settings(settings, watch=watch)

    def _handle_signal(signum: int, _frame: object) -> None:
        daemon.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    write_pid_file(settings.pid_path)
    try:
        daemon.run()
    finally:
        remove_pid_file(settings.pid_path)


@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Start the daemon as a detached background process."""
    settings = _load_settings(config)
    pid = running_pid(settings.pid_path)
    if pid is not None:
        _echo({"status": "running", "pid": pid})
        return

    settings.backup_dir.mkdir(parents=True, exist_ok=True)
    command = [sys.executable, "-m", "config_protector", "run"]
    if config is not None:
        command += ["--config", str(config.expanduser())]
    child = subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    _echo({"status": "started", "pid": child.pid, "log": str(settings.log_path)})


@app.command()
def stop(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Stop a daemon started with ``ccp start`` or ``ccp run``."""
    settings = _load_settings(config)
    pid = running_pid(settings.pid_path)
    if pid is None:
        _echo({"status": "not running"})
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as exc:
        typer.echo(f"Failed to stop protector ({pid}): {exc}", err=True)
        raise typer.Exit(code=1)
    _echo({"status": "stopped", "pid": pid})


@app.command()
def status(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Report whether the daemon runs and the state of the protected file."""
    settings = _load_settings(config)
    pid = running_pid(settings.pid_path)
    payload: dict[str, Any] = {"running": pid is not None, "pid": pid}
    if pid is not None:
        started = settings.pid_path.stat().st_mtime
        payload["uptime"] = format_duration(time.time() - started)

    report = build_report(settings)
    payload["target"] = {
        "path": str(settings.target_path),
        "state": report.target_state,
        "size_mb": round(report.target_size / (1024 * 1024), 2),
    }
    payload["backups"] = report.snapshot_count
    _echo(payload)


@app.command()
def check(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Run a single evaluation cycle now and print its outcome."""
    settings = _load_settings(config)
    configure_logging(settings)
    engine = RecoveryEngine.from_settings(settings)
    # Corrective actions only; periodic backups belong to the daemon.
    result = engine.evaluate(ProtectionState(last_backup=time.monotonic()), force=True)
    _echo({"action": result.action.value, "detail": result.detail})
    if result.action is Action.FAILED:
        raise typer.Exit(code=1)


@app.command()
def backup(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Create a manual snapshot of the protected file."""
    settings = _load_settings(config)
    configure_logging(settings)
    store = BackupStore(settings.target_path, settings.backup_dir, max_backups=settings.max_backups)
    ref = store.snapshot("manual")
    if ref is None:
        typer.echo(f"No backup created; is {settings.target_path} present?", err=True)
        raise typer.Exit(code=1)
    _echo({"backup": str(ref.path), "size": ref.size})


@app.command()
def fix(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Back up, then compact or recreate the protected file (stop the owning app first)."""
    settings = _load_settings(config)
    configure_logging(settings)
    try:
        result = fix_target(settings)
    except ProtectorError as exc:
        typer.echo(f"Failed to fix config: {exc}", err=True)
        raise typer.Exit(code=1)
    payload = result.to_dict()
    if running_pid(settings.pid_path) is not None:
        payload["note"] = "daemon is running; it will keep protecting the fixed file"
    _echo(payload)


@app.command()
def stats(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Summarize the protector log and snapshot directory."""
    settings = _load_settings(config)
    _echo(build_report(settings).to_dict())


if __name__ == "__main__":
    app()
