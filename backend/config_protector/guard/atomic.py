"""Atomic replace primitive shared by every writer of the protected file."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from config_protector.core.errors import StorageError


def atomic_write_bytes(path: Path, data: bytes, tag: str = "tmp") -> None:
    """Write ``data`` to a sibling temp file, then rename it over ``path``.

    Readers of ``path`` see either the previous content or ``data``, never a
    partial write. The temp file is removed if anything fails before the rename.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=f".{tag}", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        raise StorageError(f"Atomic write to {path} failed: {exc}", path=path) from exc
    finally:
        if os.path.exists(tmp_name):
            try:
                os.remove(tmp_name)
            except OSError:
                pass


def move_aside(path: Path, destination: Path) -> Path:
    """Rename ``path`` to ``destination`` without overwriting an existing file."""
    if destination.exists():
        raise StorageError(f"Refusing to overwrite {destination}", path=destination)
    try:
        os.rename(path, destination)
    except OSError as exc:
        raise StorageError(f"Failed to move {path} to {destination}: {exc}", path=path) from exc
    return destination


__all__ = ["atomic_write_bytes", "move_aside"]
