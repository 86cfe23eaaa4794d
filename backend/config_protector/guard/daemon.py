"""Watch/schedule loop driving the recovery engine.

Change notifications (debounced) and a fixed-period ticker both feed one
queue; a single worker thread drains it and runs every evaluation cycle in
order, so cycles never overlap.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Optional

from config_protector.core.config import Settings
from config_protector.core.logging import get_logger
from config_protector.guard.engine import Action, CycleResult, ProtectionState, RecoveryEngine
from config_protector.guard.watcher import Debouncer, TargetWatcher

logger = get_logger(__name__)


class Trigger(str, Enum):
    STARTUP = "startup"
    CHANGE = "change"
    TICK = "tick"
    STOP = "stop"


class ProtectorDaemon:
    """Owns the ProtectionState and the single evaluation worker."""

    def __init__(
        self,
        engine: RecoveryEngine,
        check_interval: float = 5.0,
        debounce_seconds: float = 1.0,
        watch: bool = True,
    ) -> None:
        self.engine = engine
        self.check_interval = check_interval
        self.state = ProtectionState()
        self.evaluations = 0
        self.last_result: CycleResult | None = None
        self._queue: "queue.Queue[Trigger]" = queue.Queue()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self.debouncer = Debouncer(debounce_seconds, self._on_change)
        self.watcher = TargetWatcher(engine.target_path, self.debouncer.notify) if watch else None

    @classmethod
    def from_settings(cls, settings: Settings, watch: bool = True) -> "ProtectorDaemon":
        return cls(
            RecoveryEngine.from_settings(settings),
            check_interval=settings.check_interval,
            debounce_seconds=settings.debounce_seconds,
            watch=watch,
        )

    def submit(self, trigger: Trigger) -> None:
        self._queue.put(trigger)

    def evaluate(self, trigger: Trigger) -> CycleResult | None:
        """Run one cycle; unexpected faults are logged and never propagate."""
        try:
            result = self.engine.evaluate(self.state)
        except Exception:
            logger.exception("Uncaught error during %s evaluation", trigger.value)
            return None
        self.state = result.state
        self.last_result = result
        if result.action is not Action.THROTTLED:
            self.evaluations += 1
            logger.debug("Evaluation (%s): %s", trigger.value, result.action.value)
        return result

    def start(self) -> None:
        """Evaluate once synchronously, then start the watcher and the worker."""
        self.evaluate(Trigger.STARTUP)
        if self.watcher is not None:
            try:
                self.watcher.start()
            except OSError as exc:
                logger.error("Failed to watch config, relying on polling: %s", exc)
        self._worker = threading.Thread(target=self._run, name="ccp-worker", daemon=True)
        self._worker.start()
        logger.info("Protection active. Press Ctrl+C to stop.")

    def stop(self) -> None:
        self._stop.set()
        self._queue.put(Trigger.STOP)

    def wait(self, poll: float = 0.5) -> None:
        """Block until the worker exits; wakes regularly so signals are handled."""
        worker = self._worker
        while worker is not None and worker.is_alive():
            worker.join(poll)

    def run(self) -> None:
        self.start()
        try:
            self.wait()
        finally:
            self.stop()
            self.wait()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _on_change(self) -> None:
        self.submit(Trigger.CHANGE)

    def _run(self) -> None:
        next_tick = time.monotonic() + self.check_interval
        try:
            while not self._stop.is_set():
                timeout = max(0.0, next_tick - time.monotonic())
                try:
                    trigger = self._queue.get(timeout=timeout)
                except queue.Empty:
                    trigger = Trigger.TICK
                    next_tick = time.monotonic() + self.check_interval
                if trigger is Trigger.STOP:
                    break
                self.evaluate(trigger)
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self.debouncer.stop()
        if self.watcher is not None:
            self.watcher.close()
        logger.info("Shutting down config protector...")


def write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{os.getpid()}\n", encoding="utf-8")


def read_pid_file(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (FileNotFoundError, ValueError):
        return None


def remove_pid_file(path: Path) -> None:
    if read_pid_file(path) == os.getpid():
        path.unlink(missing_ok=True)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def running_pid(path: Path) -> int | None:
    """PID recorded in ``path`` if that process is still alive."""
    pid = read_pid_file(path)
    if pid is None or not pid_alive(pid):
        return None
    return pid


__all__ = [
    "ProtectorDaemon",
    "Trigger",
    "write_pid_file",
    "read_pid_file",
    "remove_pid_file",
    "running_pid",
]
