"""Tests for the recovery engine evaluation cycle."""

from __future__ import annotations

import json
from pathlib import Path

import orjson
import pytest

from config_protector.guard import engine as engine_module
from config_protector.guard.backups import BackupStore
from config_protector.guard.engine import Action, ProtectionState, RecoveryEngine
from config_protector.guard.integrity import Fingerprint, Valid, classify


@pytest.fixture
def engine(target: Path, store: BackupStore) -> RecoveryEngine:
    return RecoveryEngine(target, store, max_size_bytes=4096, periodic_backup_seconds=3600, throttle_seconds=1.0)


def test_missing_target_takes_no_action(engine: RecoveryEngine, store: BackupStore) -> None:
    result = engine.evaluate(ProtectionState(), now=10.0)
    assert result.action is Action.MISSING
    assert store.list_snapshots() == []
    assert result.state.last_check == 10.0


def test_throttle_skips_back_to_back_cycles(engine: RecoveryEngine, target: Path) -> None:
    target.write_bytes(b"{}")
    first = engine.evaluate(ProtectionState(), now=10.0)
    assert first.action is Action.BACKED_UP
    second = engine.evaluate(first.state, now=10.5)
    assert second.action is Action.THROTTLED
    assert second.state == first.state
    forced = engine.evaluate(first.state, now=10.5, force=True)
    assert forced.action is Action.HEALTHY


def test_periodic_backup_after_interval(engine: RecoveryEngine, target: Path, store: BackupStore) -> None:
    target.write_bytes(b'{"a": 1}')
    state = engine.evaluate(ProtectionState(), now=0.0).state
    healthy = engine.evaluate(state, now=5.0)
    assert healthy.action is Action.HEALTHY
    later = engine.evaluate(healthy.state, now=3601.0)
    assert later.action is Action.BACKED_UP
    assert later.snapshot is not None and later.snapshot.reason == "periodic"
    assert len(store.list_snapshots()) == 2


def test_corrupt_target_recovered_from_single_valid_snapshot(
    engine: RecoveryEngine, target: Path, store: BackupStore, protector_log
) -> None:
    good = b'{"numStartups": 7, "projects": {}}'
    store.snapshot("periodic", data=good)
    target.write_bytes(b'{"numStartups": 7, "proj')

    result = engine.evaluate(ProtectionState(), now=100.0)

    assert result.action is Action.RECOVERED
    assert target.read_bytes() == good
    assert isinstance(classify(target), Valid)
    assert any("[WARN]" in line and "Recovered from backup" in line for line in protector_log())
    reasons = sorted(ref.reason for ref in store.list_snapshots())
    assert reasons == ["corruption", "periodic"]


def test_repeated_corruption_keeps_recovering(target: Path, settings, clock) -> None:
    store = BackupStore(target, settings.backup_dir, max_backups=2, clock=clock)
    engine = RecoveryEngine(target, store, throttle_seconds=0.0)
    good = b'{"numStartups": 7}'
    store.snapshot("periodic", data=good)

    state = ProtectionState(last_backup=0.0)
    for cycle in range(4):
        target.write_bytes(b'{"numStartups": ')
        result = engine.evaluate(state, now=10.0 + cycle)
        assert result.action is Action.RECOVERED
        assert target.read_bytes() == good
        state = result.state
    assert len(store.list_snapshots()) == 2


def test_corrupt_target_without_backups_is_quarantined(
    engine: RecoveryEngine, target: Path, store: BackupStore, protector_log
) -> None:
    broken = b'{"projects": {"a": ['
    target.write_bytes(broken)

    result = engine.evaluate(ProtectionState(), now=100.0)

    assert result.action is Action.QUARANTINED
    assert not target.exists()
    quarantined = list(target.parent.glob(f"{target.name}.corrupt.*"))
    assert len(quarantined) == 1
    assert quarantined[0].read_bytes() == broken
    assert any("[ERROR]" in line for line in protector_log())
    # The forensic copy is still taken.
    assert [ref.reason for ref in store.list_snapshots()] == ["corruption"]


def test_oversized_target_is_truncated(
    engine: RecoveryEngine, target: Path, store: BackupStore, make_config, protector_log
) -> None:
    original = orjson.dumps(make_config(history=50))
    assert len(original) > engine.max_size_bytes
    target.write_bytes(original)

    result = engine.evaluate(ProtectionState(), now=100.0)

    assert result.action is Action.TRUNCATED
    after = classify(target)
    assert isinstance(after, Valid)
    assert len(after.doc["projects"]["/work/project-0"]["history"]) <= 10
    snapshots = [ref for ref in store.list_snapshots() if ref.reason == "size-limit"]
    assert len(snapshots) == 1
    assert snapshots[0].path.read_bytes() == original
    assert result.state.last_backup == 100.0
    assert any("Truncated config:" in line for line in protector_log())


def test_oversized_target_with_lone_surrogate_is_truncated(
    engine: RecoveryEngine, target: Path, store: BackupStore, make_config
) -> None:
    doc = make_config(history=50)
    doc["projects"]["/work/project-0"]["history"][-1]["display"] = "cut emoji \ud83d"
    original = json.dumps(doc).encode("ascii")
    target.write_bytes(original)

    result = engine.evaluate(ProtectionState(), now=100.0)

    assert result.action is Action.TRUNCATED
    after = classify(target)
    assert isinstance(after, Valid)
    assert after.doc["projects"]["/work/project-0"]["history"][-1]["display"] == "cut emoji \ud83d"
    assert b"\\ud83d" in target.read_bytes()
    assert [ref.reason for ref in store.list_snapshots()] == ["size-limit"]


def test_lone_surrogate_target_is_not_treated_as_corrupt(engine: RecoveryEngine, target: Path) -> None:
    target.write_bytes(b'{"display": "\\ud83d trailing"}')
    result = engine.evaluate(ProtectionState(last_backup=0.0), now=100.0)
    assert result.action is Action.HEALTHY
    assert target.read_bytes() == b'{"display": "\\ud83d trailing"}'


def test_oversized_but_irreducible_target_is_left_alone(
    engine: RecoveryEngine, target: Path, store: BackupStore
) -> None:
    original = orjson.dumps({"notes": "z" * 8000})
    target.write_bytes(original)

    first = engine.evaluate(ProtectionState(last_backup=0.0), now=100.0)
    assert first.action is Action.UNREDUCIBLE
    assert first.state.unreducible is not None
    second = engine.evaluate(first.state, now=200.0)
    assert second.action is Action.UNREDUCIBLE
    assert target.read_bytes() == original
    assert store.list_snapshots() == []


def test_concurrent_rewrite_abandons_the_cycle(
    engine: RecoveryEngine, target: Path, monkeypatch: pytest.MonkeyPatch, make_config
) -> None:
    original = orjson.dumps(make_config(history=50))
    target.write_bytes(original)
    monkeypatch.setattr(engine_module, "fingerprint", lambda path: Fingerprint(size=1, mtime_ns=1))

    result = engine.evaluate(ProtectionState(), now=100.0)

    assert result.action is Action.CHANGED
    assert target.read_bytes() == original


def test_storage_errors_fail_the_cycle_without_raising(engine: RecoveryEngine, target: Path) -> None:
    target.mkdir()
    result = engine.evaluate(ProtectionState(), now=100.0)
    assert result.action is Action.FAILED
    assert result.state.last_check == 100.0


def test_from_settings_uses_configured_limits(settings) -> None:
    built = RecoveryEngine.from_settings(settings)
    assert built.max_size_bytes == settings.max_size_bytes
    assert built.store.max_backups == settings.max_backups
    assert built.rules == tuple(settings.truncation_rules)
