"""Utility functions for printstreamer."""

from __future__ import annotations

import os
import tempfile
from contextlib import suppress
from pathlib import Path


def atomic_write_bytes(path: str | Path, data: bytes) -> None:
    """Write data to path so readers only ever see the old or the new content.

    The data is written to a uniquely named temporary file in the same directory
    and then moved over the target with os.replace().
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
        os.replace(tmp_name, target)
    except BaseException:
        with suppress(OSError):
            os.unlink(tmp_name)
        raise


def atomic_write_text(path: str | Path, text: str) -> None:
    """Write UTF-8 text atomically, see atomic_write_bytes()."""
    atomic_write_bytes(path, text.encode("utf-8"))


def read_text_retry(path: str | Path) -> str | None:
    """Read a file that may be replaced concurrently, retrying once if it vanished."""
    for _ in range(2):
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
    return None
