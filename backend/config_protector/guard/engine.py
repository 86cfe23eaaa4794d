"""Evaluation cycle: classify the target, then back up, recover or shrink it."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

import orjson

from config_protector.core.config import MIB
from config_protector.core.errors import (
    NoValidBackup,
    ProtectorError,
    TargetChanged,
    VerificationFailure,
)
from config_protector.core.logging import get_logger
from config_protector.core.metrics import EVALUATIONS, TARGET_SIZE
from config_protector.guard.atomic import atomic_write_bytes, move_aside
from config_protector.guard.backups import BackupStore, SnapshotRef
from config_protector.guard.integrity import (
    Corrupt,
    Fingerprint,
    Missing,
    Valid,
    classify,
    fingerprint,
    is_valid_bytes,
)
from config_protector.guard.truncation import DEFAULT_RULES, TruncationRule, truncate
from config_protector.utils.time import now_ms

if TYPE_CHECKING:  # pragma: no cover
    from config_protector.core.config import Settings

logger = get_logger(__name__)

KIB = 1024


class Action(str, Enum):
    THROTTLED = "throttled"
    MISSING = "missing"
    HEALTHY = "healthy"
    BACKED_UP = "backed_up"
    RECOVERED = "recovered"
    QUARANTINED = "quarantined"
    TRUNCATED = "truncated"
    UNREDUCIBLE = "unreducible"
    CHANGED = "changed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProtectionState:
    """In-memory bookkeeping carried from one cycle to the next.

    Times come from the engine clock (monotonic seconds by default). A fresh
    state makes the first cycle run unthrottled and take a periodic backup.
    """

    last_check: float = float("-inf")
    last_backup: float = float("-inf")
    unreducible: Fingerprint | None = None


@dataclass(frozen=True, slots=True)
class CycleResult:
    action: Action
    state: ProtectionState
    detail: str | None = None
    snapshot: SnapshotRef | None = None


def serialize(doc: dict[str, Any]) -> bytes:
    """Serialize a document the way it is written back to disk.

    Strings orjson cannot encode (lone surrogates) and integers wider than
    64 bits go through the standard encoder with ASCII escapes instead.
    """
    try:
        return orjson.dumps(doc, option=orjson.OPT_INDENT_2)
    except orjson.JSONEncodeError:
        pass
    try:
        return json.dumps(doc, indent=2, ensure_ascii=True, allow_nan=False).encode("ascii")
    except (TypeError, ValueError) as exc:
        raise VerificationFailure(f"cannot serialize document: {exc}") from exc


class RecoveryEngine:
    """Runs one evaluation cycle against the protected file."""

    def __init__(
        self,
        target_path: Path,
        store: BackupStore,
        max_size_bytes: int = 5 * MIB,
        periodic_backup_seconds: float = 3600.0,
        throttle_seconds: float = 1.0,
        rules: Sequence[TruncationRule] = DEFAULT_RULES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target_path = target_path
        self.store = store
        self.max_size_bytes = max_size_bytes
        self.periodic_backup_seconds = periodic_backup_seconds
        self.throttle_seconds = throttle_seconds
        self.rules = tuple(rules)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: "Settings", clock: Callable[[], float] = time.monotonic) -> "RecoveryEngine":
        store = BackupStore(settings.target_path, settings.backup_dir, max_backups=settings.max_backups)
        return cls(
            settings.target_path,
            store,
            max_size_bytes=settings.max_size_bytes,
            periodic_backup_seconds=settings.periodic_backup_seconds,
            throttle_seconds=settings.throttle_seconds,
            rules=settings.truncation_rules,
            clock=clock,
        )

    def evaluate(self, state: ProtectionState, now: float | None = None, force: bool = False) -> CycleResult:
        """Run one cycle and return its outcome along with the next state.

        Calls less than ``throttle_seconds`` after the previous cycle are
        no-ops unless ``force`` is set.
        """
        now = self._clock() if now is None else now
        if not force and now - state.last_check < self.throttle_seconds:
            return CycleResult(Action.THROTTLED, state)

        state = replace(state, last_check=now)
        try:
            result = self._evaluate(state, now)
        except TargetChanged as exc:
            logger.warning("Config changed during evaluation, retrying next cycle: %s", exc)
            result = CycleResult(Action.CHANGED, state, detail=str(exc))
        except VerificationFailure as exc:
            logger.error("Verification failed: %s", exc)
            result = CycleResult(Action.FAILED, state, detail=str(exc))
        except ProtectorError as exc:
            logger.error("Evaluation failed: %s", exc)
            result = CycleResult(Action.FAILED, state, detail=str(exc))
        EVALUATIONS.labels(action=result.action.value).inc()
        return result

    def _evaluate(self, state: ProtectionState, now: float) -> CycleResult:
        integrity = classify(self.target_path)
        if isinstance(integrity, Missing):
            TARGET_SIZE.set(0)
            return CycleResult(Action.MISSING, state)

        TARGET_SIZE.set(integrity.size)
        if isinstance(integrity, Corrupt):
            return self._recover(integrity, state)
        if integrity.size > self.max_size_bytes:
            return self._shrink(integrity, state, now)
        return self._periodic(integrity, state, now) or CycleResult(Action.HEALTHY, state)

    def _periodic(self, valid: Valid, state: ProtectionState, now: float) -> CycleResult | None:
        if now - state.last_backup <= self.periodic_backup_seconds:
            return None
        ref = self.store.snapshot("periodic", data=valid.raw)
        if ref is None:
            return CycleResult(Action.FAILED, state, detail="periodic backup failed")
        return CycleResult(Action.BACKED_UP, replace(state, last_backup=now), snapshot=ref)

    def _recover(self, corrupt: Corrupt, state: ProtectionState) -> CycleResult:
        logger.error("Config file is corrupted (%s). Attempting recovery...", corrupt.error)
        self.store.snapshot("corruption", data=corrupt.raw)

        try:
            ref = self.store.find_latest_valid()
            if ref is None:
                raise NoValidBackup(f"no parseable snapshot in {self.store.backup_dir}")
        except NoValidBackup as exc:
            logger.error("No valid backup found for recovery: %s", exc)
            return self._quarantine(corrupt, state)

        data = self.store.read(ref)
        if not is_valid_bytes(data):
            raise VerificationFailure(f"backup {ref.name} changed while recovering")
        self._ensure_unchanged(corrupt.fingerprint)
        atomic_write_bytes(self.target_path, data, tag="recovery")
        self._verify_target()
        logger.warning("Recovered from backup: %s", ref.name)
        return CycleResult(Action.RECOVERED, state, detail=ref.name, snapshot=ref)

    def _quarantine(self, corrupt: Corrupt, state: ProtectionState) -> CycleResult:
        destination = self.target_path.with_name(f"{self.target_path.name}.corrupt.{now_ms()}")
        self._ensure_unchanged(corrupt.fingerprint)
        move_aside(self.target_path, destination)
        logger.error(
            "Moved corrupted file to: %s. The owning application will create a new config.",
            destination.name,
        )
        return CycleResult(Action.QUARANTINED, state, detail=str(destination))

    def _shrink(self, valid: Valid, state: ProtectionState, now: float) -> CycleResult:
        reduced = truncate(valid.doc, self.rules)
        if reduced == valid.doc:
            if state.unreducible != valid.fingerprint:
                logger.warning(
                    "Config file is %.2fMB but the truncation rules cannot reduce it further",
                    valid.size / MIB,
                )
            state = replace(state, unreducible=valid.fingerprint)
            return self._periodic(valid, state, now) or CycleResult(Action.UNREDUCIBLE, state)

        logger.warning("Config file too large (%.2fMB). Truncating...", valid.size / MIB)
        payload = serialize(reduced)
        if not is_valid_bytes(payload):
            raise VerificationFailure("truncated output does not re-parse")

        ref = self.store.snapshot("size-limit", data=valid.raw)
        if ref is None:
            logger.error("Skipping truncation: size-limit backup could not be written")
            return CycleResult(Action.FAILED, state, detail="size-limit backup failed")
        state = replace(state, last_backup=now, unreducible=None)

        self._ensure_unchanged(valid.fingerprint)
        atomic_write_bytes(self.target_path, payload, tag="truncate")
        written = self._verify_target()
        logger.info("Truncated config: %.1fKB → %.1fKB", valid.size / KIB, written.size / KIB)
        if written.size > self.max_size_bytes:
            logger.warning("Config still exceeds %.2fMB after truncation", self.max_size_bytes / MIB)
        return CycleResult(Action.TRUNCATED, state, detail=f"{valid.size}->{written.size}", snapshot=ref)

    def _ensure_unchanged(self, expected: Fingerprint) -> None:
        current = fingerprint(self.target_path)
        if current != expected:
            raise TargetChanged(f"{self.target_path} was modified by another writer")

    def _verify_target(self) -> Valid:
        after = classify(self.target_path)
        if not isinstance(after, Valid):
            raise VerificationFailure(f"{self.target_path} does not parse after replace")
        return after


__all__ = [
    "Action",
    "ProtectionState",
    "CycleResult",
    "RecoveryEngine",
    "serialize",
]
