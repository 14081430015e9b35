"""Generated server sources: naming, reading, and line-level editing.

Lines are 1-indexed and inclusive, as shown by :func:`number_lines`.  A
file is split and rejoined on ``"\\n"`` only, so a ``\\r`` before a
newline stays part of its line and unchanged lines round-trip byte for
byte.  Every edit is validated in full before the file is touched.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .config import SERVER_SUFFIX
from .errors import ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")

# ---------------------------------------------------------------------------
# Names and paths
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Map a requested server name to a safe file stem.

    A trailing ``.js`` is dropped and every character outside
    ``[A-Za-z0-9_-]`` becomes ``_``.  Distinct names may collide.
    """
    stem = (name or "").strip()
    if stem.endswith(SERVER_SUFFIX):
        stem = stem[: -len(SERVER_SUFFIX)]
    safe = _UNSAFE_RE.sub("_", stem)
    if not safe:
        raise ValidationError(f"Invalid server name: {name!r}")
    return safe


def server_path(directory: Path, name: str) -> Path:
    return directory / f"{sanitize_name(name)}{SERVER_SUFFIX}"


def list_servers(directory: Path) -> list[str]:
    """File names of all generated servers, sorted."""
    directory.mkdir(parents=True, exist_ok=True)
    return sorted(p.name for p in directory.glob(f"*{SERVER_SUFFIX}") if p.is_file())


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _read(path: Path) -> str:
    with path.open("r", encoding="utf-8", newline="") as f:
        return f.read()


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write(content)
    logger.info("Wrote %s (%d bytes)", path, len(content.encode("utf-8")))


def split_lines(content: str) -> list[str]:
    return content.split("\n")


def number_lines(content: str) -> str:
    """Prefix each line with a right-aligned 4-wide line number and ``| ``."""
    return "\n".join(f"{i:>4}| {line}" for i, line in enumerate(split_lines(content), start=1))


def read_server(directory: Path, name: str) -> tuple[Path, str]:
    """Return the path and content of an existing server."""
    path = server_path(directory, name)
    if not path.is_file():
        raise ValidationError(f'Server "{path.stem}" not found at {path}')
    return path, _read(path)


# ---------------------------------------------------------------------------
# Pure line edits
# ---------------------------------------------------------------------------


def splice_section(lines: list[str], start: int, end: int, new_lines: list[str]) -> list[str]:
    """Replace lines ``start..end`` (1-based, inclusive) with *new_lines*."""
    total = len(lines)
    if start < 1:
        raise ValidationError(f"startLine must be at least 1, got {start}")
    if start > total or end > total:
        raise ValidationError(
            f"Line range {start}-{end} is out of bounds: file has {total} lines"
        )
    if start > end:
        raise ValidationError(f"startLine ({start}) cannot be greater than endLine ({end})")
    return lines[: start - 1] + new_lines + lines[end:]


def splice_insert(lines: list[str], after: int, new_lines: list[str]) -> list[str]:
    """Insert *new_lines* after line *after*; ``0`` prepends."""
    total = len(lines)
    if after < 0:
        raise ValidationError(f"insertAfterLine must be 0 or greater, got {after}")
    if after > total:
        raise ValidationError(
            f"insertAfterLine ({after}) is out of bounds: file has {total} lines"
        )
    return lines[:after] + new_lines + lines[after:]


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------


def create_server(directory: Path, name: str, code: str, overwrite: bool = False) -> Path:
    """Write a new server file.

    Refuses to replace an existing file unless *overwrite* is set.
    """
    path = server_path(directory, name)
    if path.exists() and not overwrite:
        raise ValidationError(
            f'Server "{path.stem}" already exists at {path}. '
            "Use 'updateMcpServer' to update it or set overwriteExisting."
        )
    _write(path, code)
    return path


def replace_server(directory: Path, name: str, code: str) -> Path:
    """Overwrite the whole content of an existing server."""
    path, _old = read_server(directory, name)
    _write(path, code)
    return path


def update_section(directory: Path, name: str, start: int, end: int, code: str) -> tuple[Path, str]:
    """Replace a line range of an existing server; returns the new content."""
    path, content = read_server(directory, name)
    lines = splice_section(split_lines(content), start, end, split_lines(code))
    updated = "\n".join(lines)
    _write(path, updated)
    return path, updated


def insert_after(directory: Path, name: str, after: int, code: str) -> tuple[Path, str]:
    """Insert code after a line of an existing server; returns the new content."""
    path, content = read_server(directory, name)
    lines = splice_insert(split_lines(content), after, split_lines(code))
    updated = "\n".join(lines)
    _write(path, updated)
    return path, updated
