"""The host's registration document (``claude_desktop_config.json``).

Shape::

    {"mcpServers": {"<name>": {"command": "node", "args": ["/abs/x.js"], "env": {}}}}

Every update reads the whole document, changes it in memory, and writes the
whole document back through a temporary file in the same directory.
Concurrent writers are not coordinated; the last write wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .config import NODE_COMMAND
from .errors import ValidationError

logger = logging.getLogger(__name__)

SERVERS_KEY = "mcpServers"


def read_text(path: Path) -> str | None:
    """Raw document text, or None if the file does not exist."""
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


def load(path: Path) -> dict[str, Any]:
    """Parse the document, starting from an empty one if the file is missing."""
    text = read_text(path)
    if text is None or not text.strip():
        return {SERVERS_KEY: {}}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Registration document {path} is not valid JSON: {e}", e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"Registration document {path} must be a JSON object")
    return data


def validate(data: Any) -> dict[str, Any]:
    """Check the document shape and return it."""
    if not isinstance(data, dict):
        raise ValidationError("Configuration must be a JSON object")
    servers = data.get(SERVERS_KEY)
    if servers is None:
        return data
    if not isinstance(servers, dict):
        raise ValidationError(f'"{SERVERS_KEY}" must be an object mapping names to entries')
    for name, entry in servers.items():
        if not isinstance(entry, dict):
            raise ValidationError(f'Entry "{name}" must be an object')
        if not isinstance(entry.get("command"), str) or not entry["command"]:
            raise ValidationError(f'Entry "{name}" needs a "command" string')
        args = entry.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValidationError(f'Entry "{name}" has "args" that is not a list of strings')
        env = entry.get("env", {})
        if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
            raise ValidationError(f'Entry "{name}" has "env" that is not a string map')
    return data


def save(path: Path, data: dict[str, Any]) -> None:
    """Write the document atomically, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    logger.info("Updated registration document %s", path)


def register_server(
    path: Path,
    name: str,
    server_file: Path,
    env: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Insert or replace the entry for *name*; returns the stored entry."""
    data = load(path)
    servers = data.setdefault(SERVERS_KEY, {})
    if not isinstance(servers, dict):
        raise ValidationError(f'"{SERVERS_KEY}" in {path} must be an object')
    entry = {"command": NODE_COMMAND, "args": [str(server_file)], "env": dict(env or {})}
    servers[name] = entry
    save(path, data)
    return entry


def replace_document(path: Path, config_text: str) -> dict[str, Any]:
    """Replace the whole document with *config_text* after validating it."""
    try:
        data = json.loads(config_text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON configuration: {e}", e) from e
    validate(data)
    save(path, data)
    return data
