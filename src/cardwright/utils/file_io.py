"""File helpers for the chat log and settings persistence."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Iterator

__all__ = ["write_text", "append_line", "iter_lines", "safe_path_segment"]

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._\- ]")


def write_text(
    path: Path | str,
    content: str,
    *,
    encoding: str = "utf-8",
    atomic: bool = True,
) -> Path:
    """Write text to disk, replacing the target atomically by default."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if not atomic:
        with target.open("w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        return target

    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def append_line(path: Path | str, line: str, *, encoding: str = "utf-8") -> Path:
    """Append a single newline-terminated line and fsync it."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding=encoding, newline="") as handle:
        handle.write(line.rstrip("\n") + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    return target


def iter_lines(path: Path | str) -> Iterator[tuple[int, bytes]]:
    """Yield ``(line_number, raw_line)`` for non-blank lines; nothing if the file is missing.

    Lines come back undecoded so one corrupt line can be skipped on its own.
    """

    target = Path(path)
    if not target.exists():
        return
    with target.open("rb") as handle:
        for number, raw in enumerate(handle, start=1):
            data = raw.strip()
            if data:
                yield number, data


def safe_path_segment(value: str) -> str:
    """Return ``value`` as a single path component, rejecting traversal."""

    cleaned = _UNSAFE_SEGMENT.sub("_", value.strip())
    if not cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Identifier {value!r} cannot be used as a path segment")
    return cleaned
