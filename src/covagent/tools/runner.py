"""Shell command execution with a wall-clock ceiling."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

LOGGER = logging.getLogger(__name__)

MAX_ALLOWED_RUNTIME_SECONDS = 3600


@dataclass(slots=True)
class CommandResult:
    """Structured summary of one shell command invocation."""

    command: str
    cwd: Path | None
    exit_code: int
    stdout: str
    stderr: str
    started_at: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


CommandRunner = Callable[..., CommandResult]


def _decode(stream: str | bytes | None) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream


def run_command(
    command: str,
    cwd: Path | str | None = None,
    *,
    timeout: float = MAX_ALLOWED_RUNTIME_SECONDS,
) -> CommandResult:
    """Execute ``command`` through the shell and return a structured result.

    ``started_at`` is the epoch time captured just before launch, used later to
    judge whether a coverage report was refreshed by this run. A command that
    exceeds ``timeout`` is killed and reported with exit code -1.
    """
    workdir = Path(cwd).resolve() if cwd else None
    started_at = time.time()
    LOGGER.debug("Running command %r in %s", command, workdir or Path.cwd())

    try:
        # subprocess.run reads both pipes concurrently and kills the child on timeout.
        process = subprocess.run(
            command,
            shell=True,
            cwd=workdir,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        LOGGER.warning("Command %r timed out after %s seconds", command, timeout)
        return CommandResult(
            command=command,
            cwd=workdir,
            exit_code=-1,
            stdout=_decode(error.stdout),
            stderr=f"Command timed out after {timeout:g} seconds",
            started_at=started_at,
            timed_out=True,
        )
    except OSError as error:
        LOGGER.error("Error executing command %r: %s", command, error)
        return CommandResult(
            command=command,
            cwd=workdir,
            exit_code=-1,
            stdout="",
            stderr=f"Error executing command: {error}",
            started_at=started_at,
        )

    return CommandResult(
        command=command,
        cwd=workdir,
        exit_code=process.returncode,
        stdout=process.stdout or "",
        stderr=process.stderr or "",
        started_at=started_at,
    )


__all__ = ["CommandResult", "CommandRunner", "MAX_ALLOWED_RUNTIME_SECONDS", "run_command"]
