"""Tests for the backup store."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from config_protector.guard.backups import BackupStore, parse_reason, snapshot_name


def _set_mtime(path: Path, seconds: int) -> None:
    os.utime(path, (seconds, seconds))


def test_snapshot_of_missing_target_is_noop(store: BackupStore) -> None:
    assert store.snapshot("periodic") is None
    assert store.list_snapshots() == []


def test_snapshot_copies_bytes_and_records_reason(store: BackupStore, target: Path) -> None:
    target.write_bytes(b'{"a": 1}')
    ref = store.snapshot("manual")
    assert ref is not None
    assert ref.path.read_bytes() == b'{"a": 1}'
    assert ref.reason == "manual"
    assert ref.name.startswith("claude-") and ref.name.endswith("-manual.json")
    assert parse_reason(ref.name) == "manual"


def test_snapshot_of_explicit_bytes(store: BackupStore) -> None:
    ref = store.snapshot("corruption", data=b"{broken")
    assert ref is not None
    assert ref.path.read_bytes() == b"{broken"


def test_snapshot_names_sort_by_time(clock) -> None:
    first = snapshot_name("periodic", clock())
    second = snapshot_name("periodic", clock())
    assert first < second


def test_unknown_reason_is_rejected(store: BackupStore) -> None:
    with pytest.raises(ValueError):
        store.snapshot("nightly", data=b"{}")


def test_rotation_caps_retention_and_keeps_newest(settings, clock, target: Path) -> None:
    store = BackupStore(target, settings.backup_dir, max_backups=3, clock=clock)
    target.write_bytes(b"{}")
    refs = [store.snapshot("periodic") for _ in range(15)]
    remaining = store.list_snapshots()
    assert len(remaining) == 3
    assert {ref.name for ref in remaining} == {ref.name for ref in refs[-3:]}


def test_rotate_never_exceeds_cap_for_any_sequence(settings, clock) -> None:
    store = BackupStore(settings.target_path, settings.backup_dir, max_backups=4, clock=clock)
    for reason in ["periodic", "manual", "size-limit", "corruption"] * 3:
        store.snapshot(reason, data=b"{}")
        assert len(store.list_snapshots()) <= 4


def test_rotation_keeps_last_valid_snapshot(settings, clock) -> None:
    store = BackupStore(settings.target_path, settings.backup_dir, max_backups=3, clock=clock)
    good = store.snapshot("periodic", data=b'{"good": true}')
    for _ in range(5):
        store.snapshot("corruption", data=b"{broken")

    remaining = store.list_snapshots()
    assert len(remaining) == 3
    assert good.name in {ref.name for ref in remaining}
    assert store.find_latest_valid().name == good.name
    assert [ref.reason for ref in remaining].count("corruption") == 2


def test_rotation_failure_is_logged_not_raised(settings, clock, monkeypatch: pytest.MonkeyPatch) -> None:
    store = BackupStore(settings.target_path, settings.backup_dir, max_backups=1, clock=clock)
    for _ in range(3):
        store.snapshot("manual", data=b"{}")

    def refuse(self: Path, missing_ok: bool = False) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(Path, "unlink", refuse)
    store.snapshot("manual", data=b"{}")
    assert store.rotate() == []
    assert len(store.list_snapshots()) == 2


def test_find_latest_valid_skips_corrupt(store: BackupStore) -> None:
    good = store.snapshot("periodic", data=b'{"good": true}')
    bad = store.snapshot("corruption", data=b'{"good": tr')
    assert good is not None and bad is not None
    _set_mtime(good.path, 1_000)
    _set_mtime(bad.path, 2_000)
    found = store.find_latest_valid()
    assert found is not None
    assert found.path == good.path


def test_find_latest_valid_prefers_newest(store: BackupStore) -> None:
    older = store.snapshot("periodic", data=b'{"v": 1}')
    newer = store.snapshot("periodic", data=b'{"v": 2}')
    _set_mtime(older.path, 1_000)
    _set_mtime(newer.path, 2_000)
    assert store.find_latest_valid().path == newer.path


def test_find_latest_valid_none_when_all_corrupt(store: BackupStore) -> None:
    store.snapshot("corruption", data=b"")
    store.snapshot("corruption", data=b"[")
    assert store.find_latest_valid() is None


def test_foreign_files_in_backup_dir_are_listed_but_untagged(store: BackupStore, settings) -> None:
    settings.backup_dir.mkdir(parents=True)
    (settings.backup_dir / "claude-backup-1700000000000.json").write_bytes(b"{}")
    (settings.backup_dir / "protector.log").write_text("[x] [INFO] hi\n")
    refs = store.list_snapshots()
    assert [ref.reason for ref in refs] == [None]
