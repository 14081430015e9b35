"""Constants and configuration for the MCP adapters."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

ENV_SERVERS_DIR = "MCP_SERVERS_DIR"
ENV_CLAUDE_CONFIG = "CLAUDE_CONFIG_PATH"
ENV_LOG_LEVEL = "MCP_ADAPTERS_LOG_LEVEL"

DEFAULT_LOG_LEVEL = "INFO"

# ---------------------------------------------------------------------------
# Creator paths
# ---------------------------------------------------------------------------

DEFAULT_SERVERS_DIR = Path("~/.mcp-adapters/servers")

SERVER_SUFFIX = ".js"

PACKAGE_JSON = "package.json"

DEFAULT_PACKAGE_JSON: dict = {
    "name": "mcp-project",
    "version": "1.0.0",
    "type": "module",
    "dependencies": {},
    "devDependencies": {},
}


def servers_dir() -> Path:
    """Directory holding generated server sources."""
    raw = os.environ.get(ENV_SERVERS_DIR)
    return Path(raw).expanduser() if raw else DEFAULT_SERVERS_DIR.expanduser()


def project_dir() -> Path:
    """Directory holding ``package.json`` for the generated servers."""
    return servers_dir().parent


def claude_config_path() -> Path:
    """Location of the host's registration document for this platform."""
    raw = os.environ.get(ENV_CLAUDE_CONFIG)
    if raw:
        return Path(raw).expanduser()
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return Path(appdata) / "Claude" / "claude_desktop_config.json"
    return home / ".config" / "Claude" / "claude_desktop_config.json"


# ---------------------------------------------------------------------------
# Dependency scanning
# ---------------------------------------------------------------------------

IMPORT_RE = re.compile(r"""import\s+(?:[\w\s{},*]+from\s+)?['"]([^'"]+)['"]""")

SDK_NAMESPACE = "@modelcontextprotocol/sdk"

NODE_BUILTINS: frozenset[str] = frozenset(
    {
        "assert",
        "buffer",
        "child_process",
        "cluster",
        "crypto",
        "dgram",
        "dns",
        "events",
        "fs",
        "http",
        "http2",
        "https",
        "net",
        "os",
        "path",
        "process",
        "querystring",
        "readline",
        "stream",
        "string_decoder",
        "timers",
        "tls",
        "url",
        "util",
        "v8",
        "vm",
        "worker_threads",
        "zlib",
    }
)

# Package managers tried in order for installs.
INSTALL_COMMANDS: list[tuple[str, list[str]]] = [
    ("npm", ["npm", "install", "--save"]),
    ("yarn", ["yarn", "add"]),
]

TYPES_INSTALL_COMMAND = ["npm", "install", "--save-dev"]

# ---------------------------------------------------------------------------
# Direct runs
# ---------------------------------------------------------------------------

NODE_COMMAND = "node"
DEFAULT_RUN_TIMEOUT_MS = 10_000

# ---------------------------------------------------------------------------
# Documentation
# ---------------------------------------------------------------------------

SDK_README_URL = (
    "https://raw.githubusercontent.com/modelcontextprotocol/typescript-sdk/main/README.md"
)
SDK_REPO_URL = "https://github.com/modelcontextprotocol/typescript-sdk"

HTTP_TIMEOUT = 30.0
