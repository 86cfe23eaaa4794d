"""Filesystem watcher and debounce timer for the protected file."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, PatternMatchingEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from config_protector.core.logging import get_logger

logger = get_logger(__name__)

ChangeCallback = Callable[[], None]


class Debouncer:
    """Coalesce bursts of notifications into one callback after quiescence.

    Every ``notify`` pushes the deadline ``interval`` seconds into the future;
    the callback runs once the deadline passes without another notification.
    One long-lived thread serves every burst.
    """

    def __init__(self, interval: float, callback: ChangeCallback) -> None:
        self.interval = interval
        self.callback = callback
        self._condition = threading.Condition()
        self._deadline: float | None = None
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    def notify(self) -> None:
        with self._condition:
            if self._stopped:
                return
            self._deadline = time.monotonic() + self.interval
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="ccp-debounce", daemon=True)
                self._thread.start()
            self._condition.notify()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._deadline = None
            self._condition.notify_all()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _run(self) -> None:
        with self._condition:
            while not self._stopped:
                if self._deadline is None:
                    self._condition.wait()
                    continue
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue
                self._deadline = None
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.exception("Debounced callback failed")
                finally:
                    self._condition.acquire()


class TargetEventHandler(PatternMatchingEventHandler):
    """Forward events touching the protected file to a callback."""

    def __init__(self, target: Path, callback: ChangeCallback) -> None:
        super().__init__(
            patterns=[target.name],
            ignore_directories=True,
            case_sensitive=True,
        )
        self.target = target
        self.callback = callback

    def _matches(self, *paths: bytes | str) -> bool:
        return any(Path(os.fsdecode(path)) == self.target for path in paths if path)

    def on_created(self, event: FileSystemEvent) -> None:
        if self._matches(event.src_path):
            self.callback()

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._matches(event.src_path):
            self.callback()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._matches(event.src_path, event.dest_path):
            self.callback()

    def on_deleted(self, event: FileSystemEvent) -> None:
        if self._matches(event.src_path):
            self.callback()


class TargetWatcher:
    """High-level wrapper around a watchdog observer for a single file.

    The parent directory is watched rather than the file itself so that
    atomic rename-over replacements keep being observed.
    """

    def __init__(self, target: Path, callback: ChangeCallback) -> None:
        self.target = normalize_target(target)
        self._observer: BaseObserver = Observer()
        self._lock = threading.Lock()
        self._handler = TargetEventHandler(self.target, callback)
        self._started = False

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._observer.schedule(self._handler, str(self.target.parent), recursive=False)
            self._observer.start()
            self._started = True
        logger.info("Watching %s for changes...", self.target)

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._observer.stop()
            self._observer.join(timeout=5)
            self._started = False

    def close(self) -> None:
        self.stop()
        with self._lock:
            self._observer.unschedule_all()


def normalize_target(path: Path) -> Path:
    """Absolute path with a resolved parent, leaving a symlinked file name as-is."""
    expanded = path.expanduser()
    return expanded.parent.resolve() / expanded.name


__all__ = ["Debouncer", "TargetWatcher", "TargetEventHandler", "normalize_target"]
