"""One-shot offline cleanup of the protected file.

Unlike the daemon's truncation rules, the fixer rebuilds the document from a
short list of essential fields, and replaces an unparseable file with a
fresh minimal one. A ``manual`` snapshot of the original is always taken
first.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any

from config_protector.core.config import Settings
from config_protector.core.errors import StorageError, VerificationFailure
from config_protector.core.logging import get_logger
from config_protector.guard.atomic import atomic_write_bytes
from config_protector.guard.backups import BackupStore, SnapshotRef
from config_protector.guard.engine import serialize
from config_protector.guard.integrity import Corrupt, Missing, classify, is_valid_bytes
from config_protector.utils.time import utc_now

logger = get_logger(__name__)

MAX_PROJECTS = 5
MAX_HISTORY = 10


@dataclass(slots=True)
class FixResult:
    status: str
    old_size: int = 0
    new_size: int = 0
    backup: SnapshotRef | None = None

    @property
    def reduction(self) -> float:
        """Fraction of bytes removed, advisory only."""
        if not self.old_size:
            return 0.0
        return 1 - self.new_size / self.old_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "old_size": self.old_size,
            "new_size": self.new_size,
            "reduction": round(self.reduction, 4),
            "backup": self.backup.name if self.backup else None,
        }


def minimal_config() -> dict[str, Any]:
    return {
        "numStartups": 1,
        "installMethod": "npm",
        "autoUpdates": True,
        "hasSeenTasksHint": False,
        "tipsHistory": {},
        "promptQueueUseCount": 0,
        "userID": secrets.token_hex(32),
        "firstStartTime": utc_now().isoformat(),
        "projects": {},
    }


def _slim_history_item(item: Any) -> Any:
    if isinstance(item, dict):
        return {
            "display": item.get("display", ""),
            "timestamp": item.get("timestamp") or utc_now().isoformat(),
        }
    return item


def compact_config(config: dict[str, Any]) -> dict[str, Any]:
    """Keep only the fields the owning application needs to start."""
    clean = minimal_config()
    clean.update(
        numStartups=config.get("numStartups") or 1,
        installMethod=config.get("installMethod") or "npm",
        autoUpdates=config.get("autoUpdates") is not False,
        hasSeenTasksHint=bool(config.get("hasSeenTasksHint", False)),
        promptQueueUseCount=config.get("promptQueueUseCount") or 0,
        userID=config.get("userID") or clean["userID"],
        firstStartTime=config.get("firstStartTime") or clean["firstStartTime"],
    )

    projects = config.get("projects")
    if isinstance(projects, dict):
        for project_path, project in list(projects.items())[:MAX_PROJECTS]:
            project = project if isinstance(project, dict) else {}
            history = project.get("history")
            history = history if isinstance(history, list) else []
            clean["projects"][project_path] = {
                "allowedTools": project.get("allowedTools") or [],
                "history": [_slim_history_item(item) for item in history[-MAX_HISTORY:]],
            }
    return clean


def fix_target(settings: Settings) -> FixResult:
    """Back up, then compact (or recreate) the protected file in place."""
    target = settings.target_path
    integrity = classify(target)
    if isinstance(integrity, Missing):
        logger.info("No config file found at %s; the owning application will create one", target)
        return FixResult(status="missing")

    store = BackupStore(target, settings.backup_dir, max_backups=settings.max_backups)
    backup = store.snapshot("manual", data=integrity.raw)
    if backup is None:
        raise StorageError(f"Could not back up {target} before fixing it", path=target)

    if isinstance(integrity, Corrupt):
        logger.warning("Config is not valid JSON (%s); creating a minimal config", integrity.error)
        fixed, status = minimal_config(), "recreated"
    else:
        fixed, status = compact_config(integrity.doc), "compacted"

    payload = serialize(fixed)
    if not is_valid_bytes(payload):
        raise VerificationFailure("fixed config does not re-parse")
    atomic_write_bytes(target, payload, tag="fixed")

    result = FixResult(status=status, old_size=integrity.size, new_size=len(payload), backup=backup)
    logger.info(
        "Fixed config (%s): %.1fKB → %.1fKB, backup %s",
        status,
        result.old_size / 1024,
        result.new_size / 1024,
        backup.name,
    )
    return result


__all__ = ["FixResult", "fix_target", "compact_config", "minimal_config"]
