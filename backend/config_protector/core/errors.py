"""Error taxonomy for the protector."""

from __future__ import annotations

from pathlib import Path


class ProtectorError(Exception):
    """Base class for every error raised by config_protector."""


class ParseError(ProtectorError):
    """Content is not a well-formed JSON object."""


class StorageError(ProtectorError):
    """A read, write or rename against the filesystem failed."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class NoValidBackup(ProtectorError):
    """Recovery was attempted but no snapshot parses."""


class VerificationFailure(ProtectorError):
    """Freshly serialized or written output did not re-parse as valid."""


class TargetChanged(ProtectorError):
    """The protected file was rewritten while a cycle was evaluating it."""


__all__ = [
    "ProtectorError",
    "ParseError",
    "StorageError",
    "NoValidBackup",
    "VerificationFailure",
    "TargetChanged",
]
