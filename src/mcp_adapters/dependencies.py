"""npm dependency discovery and installation for generated servers.

Discovery is a regex scan of ES ``import`` statements.  It does not see
``require()`` calls, dynamic ``import()`` expressions, or imports built from
strings at runtime.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import (
    DEFAULT_PACKAGE_JSON,
    IMPORT_RE,
    INSTALL_COMMANDS,
    NODE_BUILTINS,
    PACKAGE_JSON,
    SDK_NAMESPACE,
    TYPES_INSTALL_COMMAND,
)
from .errors import ExternalServiceError, ValidationError
from .runner import run_command

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def scan_imports(source: str) -> list[str]:
    """All module specifiers named by ``import`` statements, in order."""
    return IMPORT_RE.findall(source)


def package_name(specifier: str) -> str | None:
    """Installable package for an import specifier, or None if it needs none.

    Relative and absolute paths, Node built-ins and the MCP SDK are
    excluded.  Deep imports collapse to the package: ``@scope/name/sub``
    to ``@scope/name``, ``pkg/sub`` to ``pkg``.
    """
    if specifier.startswith(("./", "../", "/")) or specifier in (".", ".."):
        return None
    if specifier.startswith("node:"):
        return None
    parts = specifier.split("/")
    if specifier.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = f"{parts[0]}/{parts[1]}"
    else:
        name = parts[0]
    if name in NODE_BUILTINS:
        return None
    if name == SDK_NAMESPACE or name.startswith(SDK_NAMESPACE + "/"):
        return None
    return name


def external_packages(source: str) -> list[str]:
    """Unique external packages imported by *source*, first-seen order."""
    seen: dict[str, None] = {}
    for spec in scan_imports(source):
        name = package_name(spec)
        if name is not None:
            seen.setdefault(name, None)
    return list(seen)


# ---------------------------------------------------------------------------
# package.json
# ---------------------------------------------------------------------------


def strip_version(spec: str) -> str:
    """``lodash@4`` -> ``lodash``; ``@scope/x@1.2`` -> ``@scope/x``."""
    at = spec.find("@", 1)
    return spec if at == -1 else spec[:at]


def types_package(name: str) -> str:
    """DefinitelyTyped package name for *name*."""
    if name.startswith("@"):
        scope, _, rest = name[1:].partition("/")
        return f"@types/{scope}__{rest}"
    return f"@types/{name}"


def ensure_package_json(project_dir: Path) -> dict[str, Any]:
    """Load ``package.json``, creating a default one if it is missing."""
    path = project_dir / PACKAGE_JSON
    if not path.exists():
        project_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(DEFAULT_PACKAGE_JSON, indent=2) + "\n", encoding="utf-8")
        logger.info("Created %s", path)
        return json.loads(json.dumps(DEFAULT_PACKAGE_JSON))
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}", e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a JSON object")
    return data


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


@dataclass
class InstallResult:
    """Outcome of an install request."""

    requested: list[str]
    already_installed: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    manager: str | None = None
    types_installed: list[str] = field(default_factory=list)
    attempts: list[str] = field(default_factory=list)
    output: str = ""

    def summary(self) -> str:
        parts: list[str] = []
        if self.installed:
            parts.append(f"Installed with {self.manager}: {', '.join(self.installed)}")
        if self.already_installed:
            parts.append(f"Already installed: {', '.join(self.already_installed)}")
        if self.types_installed:
            parts.append(f"Type definitions installed: {', '.join(self.types_installed)}")
        if not self.installed and not self.already_installed:
            parts.append("Nothing to install.")
        if self.output.strip():
            parts.append(f"\nOutput:\n{self.output.strip()}")
        return "\n".join(parts)


async def _install_types(project_dir: Path, packages: list[str]) -> list[str]:
    installed: list[str] = []
    for name in packages:
        if name.startswith("@types/"):
            continue
        candidate = types_package(name)
        probe = await run_command(["npm", "view", candidate, "version"], cwd=project_dir)
        if not probe.ok or not probe.stdout.strip():
            logger.debug("No type definitions for %s", name)
            continue
        result = await run_command([*TYPES_INSTALL_COMMAND, candidate], cwd=project_dir)
        if result.ok:
            installed.append(candidate)
        else:
            logger.warning("Could not install %s: %s", candidate, result.stderr.strip())
    return installed


async def install_packages(
    project_dir: Path,
    packages: list[str],
    install_types: bool = True,
) -> InstallResult:
    """Install *packages* into *project_dir*.

    Packages already listed under ``dependencies`` are skipped.  Package
    managers are tried in order (npm, then yarn); if all of them fail an
    ExternalServiceError names every attempt.
    """
    requested = [p.strip() for p in packages if p and p.strip()]
    if not requested:
        raise ValidationError("No dependencies given")
    manifest = ensure_package_json(project_dir)
    present = manifest.get("dependencies") or {}

    result = InstallResult(requested=requested)
    to_install: list[str] = []
    for spec in requested:
        if strip_version(spec) in present:
            result.already_installed.append(spec)
        else:
            to_install.append(spec)
    if not to_install:
        return result

    failures: list[str] = []
    for manager, base_cmd in INSTALL_COMMANDS:
        outcome = await run_command([*base_cmd, *to_install], cwd=project_dir)
        result.attempts.append(" ".join(outcome.command))
        if outcome.ok:
            result.manager = manager
            result.installed = to_install
            result.output = outcome.stdout
            break
        failures.append(f"{manager}: {(outcome.stderr or outcome.stdout).strip() or 'failed'}")
    else:
        raise ExternalServiceError(
            "Failed to install dependencies. Attempts:\n" + "\n".join(failures)
        )

    if install_types:
        result.types_installed = await _install_types(
            project_dir, [strip_version(p) for p in to_install]
        )
    return result
