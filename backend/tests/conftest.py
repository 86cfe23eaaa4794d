"""Test fixtures for the config protector."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point every path at tmp_path and reset cached settings and log handlers."""
    for key in list(os.environ):
        if key.startswith("CCP_"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("CCP_TARGET_PATH", str(home / ".claude.json"))
    monkeypatch.setenv("CCP_BACKUP_DIR", str(home / ".claude-backups"))
    monkeypatch.setenv("CCP_CONFIG", str(tmp_path / "absent-config.yaml"))

    from config_protector.core.config import get_settings

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def settings():
    from config_protector.core.config import get_settings

    return get_settings()


@pytest.fixture
def target(settings) -> Path:
    return settings.target_path


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Wall clock for snapshot names that advances one second per call."""
    current = [datetime(2026, 1, 1, tzinfo=timezone.utc)]

    def tick() -> datetime:
        current[0] += timedelta(seconds=1)
        return current[0]

    return tick


@pytest.fixture
def store(settings, clock):
    from config_protector.guard.backups import BackupStore

    return BackupStore(settings.target_path, settings.backup_dir, max_backups=settings.max_backups, clock=clock)


@pytest.fixture
def protector_log(settings) -> Callable[[], list[str]]:
    """Route logging to protector.log and return a reader for its lines."""
    from config_protector.core.logging import configure_logging

    configure_logging(settings, level="DEBUG")

    def read() -> list[str]:
        if not settings.log_path.exists():
            return []
        return settings.log_path.read_text(encoding="utf-8").splitlines()

    return read


def _make_config(projects: int = 1, history: int = 50, payload: int = 200) -> dict:
    doc: dict = {
        "numStartups": 42,
        "installMethod": "npm",
        "autoUpdates": True,
        "userID": "ab" * 32,
        "tipsHistory": {f"tip-{i}": i for i in range(30)},
        "projects": {},
    }
    for p in range(projects):
        doc["projects"][f"/work/project-{p}"] = {
            "allowedTools": ["Read", "Write"],
            "history": [
                {
                    "display": f"prompt {i} " + "x" * payload,
                    "timestamp": f"2026-01-{(i % 28) + 1:02d}T10:00:00Z",
                }
                for i in range(history)
            ],
            "cache": {"blob": "y" * payload},
        }
    return doc


@pytest.fixture
def make_config() -> Callable[..., dict]:
    """Factory for documents shaped like the protected application's state file."""
    return _make_config
