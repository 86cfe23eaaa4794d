"""Read-only statistics over the protector log and snapshot directory."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from config_protector.core.config import Settings
from config_protector.core.errors import StorageError
from config_protector.guard.backups import BackupStore
from config_protector.guard.integrity import Corrupt, Missing, classify

LOG_LINE_RE = re.compile(r"^\[(?P<timestamp>[^\]]+)\] \[(?P<level>[A-Z]+)\] (?P<message>.*)$")
BACKUP_RE = re.compile(r"^Created backup \((?P<reason>[a-z-]+)\): ")
TRUNCATED_RE = re.compile(r"^Truncated config: (?P<old>[\d.]+)KB → (?P<new>[\d.]+)KB")


@dataclass(slots=True)
class LogEntry:
    timestamp: str
    level: str
    message: str


@dataclass(slots=True)
class Report:
    backups: Counter = field(default_factory=Counter)
    truncations: int = 0
    recoveries: int = 0
    quarantines: int = 0
    errors: int = 0
    warnings: int = 0
    reductions: list[float] = field(default_factory=list)
    last_event: str | None = None
    snapshot_count: int = 0
    snapshot_bytes: int = 0
    latest_snapshot: str | None = None
    target_state: str = "missing"
    target_size: int = 0

    @property
    def compaction_ratio(self) -> float | None:
        """Mean size reduction of logged truncations; a heuristic, not a guarantee."""
        if not self.reductions:
            return None
        return sum(self.reductions) / len(self.reductions)

    def to_dict(self) -> dict[str, Any]:
        ratio = self.compaction_ratio
        return {
            "target": {"state": self.target_state, "size": self.target_size},
            "snapshots": {
                "count": self.snapshot_count,
                "bytes": self.snapshot_bytes,
                "latest": self.latest_snapshot,
            },
            "events": {
                "backups": dict(self.backups),
                "truncations": self.truncations,
                "recoveries": self.recoveries,
                "quarantines": self.quarantines,
                "warnings": self.warnings,
                "errors": self.errors,
                "last": self.last_event,
            },
            "compaction_ratio": round(ratio, 4) if ratio is not None else None,
        }


def parse_log_line(line: str) -> LogEntry | None:
    match = LOG_LINE_RE.match(line.rstrip("\n"))
    if match is None:
        return None
    return LogEntry(match["timestamp"], match["level"], match["message"])


def iter_log(path: Path) -> Iterator[LogEntry]:
    """Yield parsed entries, skipping lines in any other format."""
    if not path.exists():
        return
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            entry = parse_log_line(line)
            if entry is not None:
                yield entry


def _tally(report: Report, entry: LogEntry) -> None:
    report.last_event = entry.timestamp
    if entry.level == "ERROR":
        report.errors += 1
    elif entry.level == "WARN":
        report.warnings += 1

    message = entry.message
    backup = BACKUP_RE.match(message)
    if backup:
        report.backups[backup["reason"]] += 1
        return
    truncated = TRUNCATED_RE.match(message)
    if truncated:
        report.truncations += 1
        old, new = float(truncated["old"]), float(truncated["new"])
        if old > 0:
            report.reductions.append(1 - new / old)
        return
    if message.startswith("Recovered from backup:"):
        report.recoveries += 1
    elif message.startswith("Moved corrupted file to:"):
        report.quarantines += 1


def build_report(settings: Settings) -> Report:
    report = Report()
    for entry in iter_log(settings.log_path):
        _tally(report, entry)

    store = BackupStore(settings.target_path, settings.backup_dir, max_backups=settings.max_backups)
    snapshots = store.list_snapshots()
    report.snapshot_count = len(snapshots)
    report.snapshot_bytes = sum(ref.size for ref in snapshots)
    report.latest_snapshot = snapshots[0].name if snapshots else None

    try:
        integrity = classify(settings.target_path)
    except StorageError:
        report.target_state = "unreadable"
        return report
    if isinstance(integrity, Missing):
        report.target_state = "missing"
    else:
        report.target_state = "corrupt" if isinstance(integrity, Corrupt) else "valid"
        report.target_size = integrity.size
    return report


__all__ = ["Report", "LogEntry", "build_report", "parse_log_line", "iter_log"]
