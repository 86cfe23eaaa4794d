"""Timestamped snapshots of the protected file and their retention."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Literal, get_args

from config_protector.core.errors import StorageError
from config_protector.core.logging import get_logger
from config_protector.core.metrics import SNAPSHOT_FAILURES, SNAPSHOTS
from config_protector.guard.atomic import atomic_write_bytes
from config_protector.guard.integrity import is_valid_bytes
from config_protector.utils.time import utc_now

logger = get_logger(__name__)

Reason = Literal["periodic", "size-limit", "corruption", "manual"]
REASONS: tuple[str, ...] = get_args(Reason)

SNAPSHOT_PREFIX = "claude-"
SNAPSHOT_GLOB = f"{SNAPSHOT_PREFIX}*.json"
_STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"
_NAME_RE = re.compile(
    rf"^{SNAPSHOT_PREFIX}(?P<stamp>\d{{4}}-\d{{2}}-\d{{2}}T\d{{2}}-\d{{2}}-\d{{2}}-\d{{6}}Z)-(?P<reason>[a-z-]+)\.json$"
)


@dataclass(frozen=True, slots=True)
class SnapshotRef:
    path: Path
    reason: str | None
    modified_ns: int
    size: int

    @property
    def name(self) -> str:
        return self.path.name


def snapshot_name(reason: str, when: datetime) -> str:
    return f"{SNAPSHOT_PREFIX}{when.strftime(_STAMP_FORMAT)}-{reason}.json"


def parse_reason(name: str) -> str | None:
    """Reason encoded in a snapshot file name; None for foreign names."""
    match = _NAME_RE.match(name)
    return match.group("reason") if match else None


class BackupStore:
    """Owns the snapshot directory for one target file."""

    def __init__(
        self,
        target_path: Path,
        backup_dir: Path,
        max_backups: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.target_path = target_path
        self.backup_dir = backup_dir
        self.max_backups = max_backups
        self._clock = clock

    def snapshot(self, reason: str, data: bytes | None = None) -> SnapshotRef | None:
        """Copy the target (or ``data``) into a new snapshot, then rotate.

        Returns None when the target does not exist or the copy failed.
        """
        if reason not in REASONS:
            raise ValueError(f"unknown snapshot reason: {reason!r}")
        if data is None:
            try:
                data = self.target_path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                logger.error("Failed to create backup: %s", exc)
                SNAPSHOT_FAILURES.inc()
                return None

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            path = self._new_path(reason)
            atomic_write_bytes(path, data, tag="snapshot")
            stat = path.stat()
        except (OSError, StorageError) as exc:
            logger.error("Failed to create backup: %s", exc)
            SNAPSHOT_FAILURES.inc()
            return None

        logger.info("Created backup (%s): %s", reason, path.name)
        SNAPSHOTS.labels(reason=reason).inc()
        self.rotate()
        return SnapshotRef(path=path, reason=reason, modified_ns=stat.st_mtime_ns, size=stat.st_size)

    def rotate(self) -> list[Path]:
        """Delete every snapshot beyond ``max_backups``, oldest first.

        The newest parseable snapshot survives rotation: when none of the
        retained snapshots parses, it takes the place of the oldest retained
        one, so repeated corruption snapshots cannot evict the last good copy.
        """
        snapshots = self.list_snapshots()
        retained, expired = snapshots[: self.max_backups], snapshots[self.max_backups :]
        if expired and not any(self._parses(ref) for ref in retained):
            rescued = next((ref for ref in expired if self._parses(ref)), None)
            if rescued is not None:
                expired = [retained[-1]] + [ref for ref in expired if ref is not rescued]
                logger.debug("Keeping last valid backup: %s", rescued.name)

        removed: list[Path] = []
        for stale in expired:
            try:
                stale.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to remove old backup %s: %s", stale.name, exc)
                continue
            removed.append(stale.path)
            logger.debug("Removed old backup: %s", stale.name)
        return removed

    def list_snapshots(self) -> list[SnapshotRef]:
        """Snapshots newest first, by modification time then name."""
        if not self.backup_dir.is_dir():
            return []
        refs: list[SnapshotRef] = []
        for path in self.backup_dir.glob(SNAPSHOT_GLOB):
            try:
                stat = path.stat()
            except OSError:
                continue
            if not path.is_file():
                continue
            refs.append(
                SnapshotRef(
                    path=path,
                    reason=parse_reason(path.name),
                    modified_ns=stat.st_mtime_ns,
                    size=stat.st_size,
                )
            )
        refs.sort(key=lambda ref: (ref.modified_ns, ref.name), reverse=True)
        return refs

    def find_latest_valid(self) -> SnapshotRef | None:
        """Newest snapshot whose bytes parse as a JSON object."""
        for ref in self.list_snapshots():
            try:
                raw = self.read(ref)
            except StorageError as exc:
                logger.warning("Skipping unreadable backup %s: %s", ref.name, exc)
                continue
            if is_valid_bytes(raw):
                return ref
            logger.debug("Skipping corrupt backup: %s", ref.name)
        return None

    def read(self, ref: SnapshotRef) -> bytes:
        try:
            return ref.path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot read backup {ref.path}: {exc}", path=ref.path) from exc

    def _parses(self, ref: SnapshotRef) -> bool:
        try:
            return is_valid_bytes(self.read(ref))
        except StorageError:
            return False

    def _new_path(self, reason: str) -> Path:
        when = self._clock()
        path = self.backup_dir / snapshot_name(reason, when)
        while path.exists():
            when += timedelta(microseconds=1)
            path = self.backup_dir / snapshot_name(reason, when)
        return path


__all__ = [
    "BackupStore",
    "SnapshotRef",
    "Reason",
    "REASONS",
    "SNAPSHOT_GLOB",
    "snapshot_name",
    "parse_reason",
]
