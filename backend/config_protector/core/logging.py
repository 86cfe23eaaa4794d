"""Logging utilities for the config protector.

Two sinks are configured on the root logger: the append-only
``protector.log`` next to the snapshots, which external dashboards tail and
parse, and the console. A failure to write a record is counted and dropped;
logging never raises into the daemon.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

from config_protector.core.metrics import LOG_FAILURES

if TYPE_CHECKING:  # pragma: no cover
    from config_protector.core.config import Settings

_DEFAULT_LEVEL = os.environ.get("CCP_LOG_LEVEL", "INFO")

_LEVEL_NAMES = {
    "WARNING": "WARN",
    "CRITICAL": "ERROR",
}


def _iso_timestamp(created: float) -> str:
    stamp = datetime.fromtimestamp(created, tz=timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def level_label(record: logging.LogRecord) -> str:
    return _LEVEL_NAMES.get(record.levelname, record.levelname)


class LineFormatter(logging.Formatter):
    """``[<ISO8601>] [<LEVEL>] <message>``, one line per record."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            # Keep one record per line for consumers that split on newlines.
            exc_text = self.formatException(record.exc_info).splitlines()[-1]
            message = f"{message} ({exc_text})"
        return f"[{_iso_timestamp(record.created)}] [{level_label(record)}] {message}"


class JsonFormatter(logging.Formatter):
    """Lightweight JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _iso_timestamp(record.created),
            "level": level_label(record),
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        return orjson.dumps(payload, default=str).decode("utf-8")


class ProtectorLogHandler(RotatingFileHandler):
    """Append log that is renamed aside wholesale once it grows past ``max_bytes``."""

    def __init__(self, path: Path, max_bytes: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, maxBytes=max_bytes, backupCount=0, encoding="utf-8", delay=True)
        self.failures = 0

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        if os.path.exists(self.baseFilename):
            os.rename(self.baseFilename, f"{self.baseFilename}.{int(time.time() * 1000)}")
        self.stream = self._open()

    def handleError(self, record: logging.LogRecord) -> None:
        self.failures += 1
        LOG_FAILURES.inc()


def configure_logging(
    settings: "Settings | None" = None,
    level: str | int | None = None,
    use_json: bool | None = None,
) -> None:
    """Configure the root logger.

    Without settings only the console handler is installed; with settings the
    ``protector.log`` file handler is added and ``debug``/``log_json`` apply.
    """
    logging.captureWarnings(True)
    root = logging.getLogger()
    if level is None:
        level = "DEBUG" if settings is not None and settings.debug else _DEFAULT_LEVEL
    if use_json is None:
        use_json = settings.log_json if settings is not None else False
    root.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JsonFormatter() if use_json else LineFormatter())
    handlers: list[logging.Handler] = [console]
    if settings is not None:
        file_handler = ProtectorLogHandler(settings.log_path, settings.log_max_bytes)
        file_handler.setFormatter(LineFormatter())
        handlers.append(file_handler)

    for previous in root.handlers:
        if isinstance(previous, ProtectorLogHandler):
            previous.close()
    root.handlers = handlers


def get_logger(name: str = "config_protector") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = [
    "configure_logging",
    "get_logger",
    "LineFormatter",
    "JsonFormatter",
    "ProtectorLogHandler",
]
