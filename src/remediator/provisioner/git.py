"""Async git subprocess helper."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 300


class GitCommandError(Exception):
    """Raised when a git command exits non-zero, times out or cannot start.

    Attributes:
        args_list: The git arguments that were run.
        returncode: Exit code, or None when the process never finished.
        stderr: Captured error output.
    """

    def __init__(
        self,
        args_list: Sequence[str],
        returncode: Optional[int],
        stderr: str,
    ):
        self.args_list = list(args_list)
        self.returncode = returncode
        self.stderr = stderr
        command = " ".join(self.args_list)
        super().__init__(f"git {command} failed ({returncode}): {stderr}")


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def run_git(
    args: Sequence[str],
    cwd: Path,
    timeout: float = GIT_TIMEOUT_SECONDS,
    check: bool = True,
) -> GitResult:
    """Run ``git <args>`` in ``cwd`` without blocking the event loop.

    Args:
        args: Arguments after ``git``.
        cwd: Working directory for the command.
        timeout: Seconds before the process is killed.
        check: Raise GitCommandError on a non-zero exit code.

    Raises:
        GitCommandError: On failure when ``check`` is set, on timeout, or
            when git cannot be started.
    """
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    logger.debug("Running git", extra={"args": list(args), "cwd": str(cwd)})

    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise GitCommandError(args, None, f"Failed to start git: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _kill(process)
        raise GitCommandError(args, None, f"Timed out after {timeout}s") from exc
    except asyncio.CancelledError:
        await _kill(process)
        raise

    result = GitResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )
    if check and result.returncode != 0:
        raise GitCommandError(args, result.returncode, result.stderr or result.stdout)
    return result
