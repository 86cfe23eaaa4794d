"""Structural validation of the protected JSON file."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import orjson

from config_protector.core.errors import ParseError, StorageError


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Size and modification time of a file at a point in time."""

    size: int
    mtime_ns: int

    @classmethod
    def of(cls, stat: os.stat_result) -> "Fingerprint":
        return cls(size=stat.st_size, mtime_ns=stat.st_mtime_ns)


@dataclass(frozen=True, slots=True)
class Missing:
    path: Path


@dataclass(frozen=True, slots=True)
class Valid:
    path: Path
    doc: dict[str, Any]
    raw: bytes
    fingerprint: Fingerprint

    @property
    def size(self) -> int:
        return len(self.raw)


@dataclass(frozen=True, slots=True)
class Corrupt:
    path: Path
    error: ParseError
    raw: bytes
    fingerprint: Fingerprint

    @property
    def size(self) -> int:
        return len(self.raw)


Integrity = Union[Missing, Valid, Corrupt]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def parse_document(raw: bytes) -> dict[str, Any]:
    """Parse ``raw`` as a JSON object or raise ParseError.

    orjson refuses some documents that are still RFC 8259 JSON, such as a
    lone surrogate escape in a string. Those are re-checked with the
    standard parser before being reported as corrupt.
    """
    try:
        doc = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        try:
            doc = json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
        except (ValueError, RecursionError):
            raise ParseError(str(exc)) from exc
    if not isinstance(doc, dict):
        raise ParseError(f"top-level value is {type(doc).__name__}, expected object")
    return doc


def is_valid_bytes(raw: bytes) -> bool:
    try:
        parse_document(raw)
    except ParseError:
        return False
    return True


def fingerprint(path: Path) -> Fingerprint | None:
    """Current fingerprint of ``path``, or None when it does not exist."""
    try:
        return Fingerprint.of(path.stat())
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StorageError(f"Cannot stat {path}: {exc}", path=path) from exc


def classify(path: Path) -> Integrity:
    """Read ``path`` once and classify it as Missing, Valid or Corrupt.

    Parse failures never escape; only an existing file that cannot be read
    raises StorageError.
    """
    try:
        stat = path.stat()
        raw = path.read_bytes()
    except FileNotFoundError:
        return Missing(path)
    except OSError as exc:
        raise StorageError(f"Cannot read {path}: {exc}", path=path) from exc

    current = Fingerprint.of(stat)
    try:
        doc = parse_document(raw)
    except ParseError as exc:
        return Corrupt(path=path, error=exc, raw=raw, fingerprint=current)
    return Valid(path=path, doc=doc, raw=raw, fingerprint=current)


__all__ = [
    "Fingerprint",
    "Missing",
    "Valid",
    "Corrupt",
    "Integrity",
    "classify",
    "parse_document",
    "is_valid_bytes",
    "fingerprint",
]
