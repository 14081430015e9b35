"""Subprocess execution for package installs and direct server runs."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import NODE_COMMAND

logger = logging.getLogger(__name__)

# Seconds to wait for pipes to close once the child has exited or been killed
DRAIN_GRACE_SECONDS = 2.0

# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    """Outcome of one child process."""

    command: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def errored(self) -> bool:
        """True if the process wrote to stderr or exited on its own with a non-zero code."""
        if self.stderr:
            return True
        return not self.timed_out and self.returncode != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "timed_out": self.timed_out,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        sink.append(chunk)


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill the child and everything it spawned in its session."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            logger.warning("Cannot signal process group %s, killing the child only", proc.pid)
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def _settle(proc: asyncio.subprocess.Process, readers: list[asyncio.Task]) -> None:
    """Wait a bounded time for exit and pipe EOF; cancel whatever is left."""
    waiter = asyncio.ensure_future(proc.wait())
    _, pending = await asyncio.wait([waiter, *readers], timeout=DRAIN_GRACE_SECONDS)
    if pending:
        logger.warning("Output pipes of pid %s still open after %.1fs, abandoning", proc.pid, DRAIN_GRACE_SECONDS)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run *cmd* without a shell, capturing output.

    With a *timeout* (seconds) the process and any children it started are
    killed once it elapses; output written before the kill is kept.
    """
    logger.info("Running %s (cwd=%s)", " ".join(cmd), cwd)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=sys.platform != "win32",
        )
    except FileNotFoundError:
        logger.error("Executable not found: %s", cmd[0])
        return CommandResult(command=cmd, returncode=None, stderr=f"{cmd[0]}: command not found")

    out: list[bytes] = []
    err: list[bytes] = []
    readers = [
        asyncio.create_task(_drain(proc.stdout, out)),
        asyncio.create_task(_drain(proc.stderr, err)),
    ]
    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.info("Killing %s after %.1fs", cmd[0], timeout)
        _kill_tree(proc)
    await _settle(proc, readers)

    result = CommandResult(
        command=cmd,
        returncode=None if timed_out else proc.returncode,
        stdout=b"".join(out).decode("utf-8", errors="replace"),
        stderr=b"".join(err).decode("utf-8", errors="replace"),
        timed_out=timed_out,
    )
    if not timed_out and result.returncode != 0:
        logger.error("%s exited with %s: %s", cmd[0], result.returncode, result.stderr.strip())
    return result


async def run_server_directly(path: Path, timeout_ms: int) -> CommandResult:
    """Start ``node <path>``, let it run for *timeout_ms*, then kill it."""
    return await run_command([NODE_COMMAND, str(path)], cwd=path.parent, timeout=timeout_ms / 1000)
