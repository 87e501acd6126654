"""External agent subprocess management.

Runs the change-making agent CLI inside the prepared worktree. The
remediation instructions are written to the agent's stdin while stdout and
stderr are streamed line by line into logs and an optional sink. Exit code 0
is not enough for success: an agent that runs out of turns also exits 0, so
the combined output is checked for the turn-limit marker.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

TURN_LIMIT_MARKER = "Reached max turns"


@dataclass
class AgentResult:
    """Result of one agent invocation.

    Attributes:
        success: Exit code 0 and no turn-limit marker in the output.
        exit_code: Process exit code (-1 for timeout/OS errors).
        output: Combined stdout and stderr, one line per entry.
        hit_turn_limit: True when the agent reported reaching its turn limit.
        duration_seconds: Wall-clock execution time.
    """

    success: bool
    exit_code: int
    output: str
    hit_turn_limit: bool
    duration_seconds: float


class AgentRunner:
    """Launches the agent CLI and supervises it until exit.

    Attributes:
        agent_path: Agent executable.
        max_turns: Turn ceiling passed to the agent.
        timeout_seconds: Optional wall-clock limit; None disables it.
        turn_limit_marker: Output text that signals the turn ceiling was hit.
    """

    def __init__(
        self,
        agent_path: str = "claude",
        max_turns: int = 500,
        timeout_seconds: Optional[int] = None,
        turn_limit_marker: str = TURN_LIMIT_MARKER,
    ):
        self.agent_path = agent_path
        self.max_turns = max_turns
        self.timeout_seconds = timeout_seconds
        self.turn_limit_marker = turn_limit_marker

    def build_command(self) -> List[str]:
        return [
            self.agent_path,
            "-p",
            "--dangerously-skip-permissions",
            "--max-turns",
            str(self.max_turns),
        ]

    async def run(
        self,
        instructions: str,
        work_dir: Path,
        env: Optional[Mapping[str, str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> AgentResult:
        """Run the agent against ``work_dir`` with ``instructions`` on stdin.

        Args:
            instructions: Prompt text streamed to the agent's stdin.
            work_dir: Directory the agent runs in.
            env: Extra environment variables for the agent process.
            output_sink: Optional function called with each output line.

        Returns:
            AgentResult describing the run.
        """
        start_time = time.monotonic()
        process = None

        try:
            process = await self._start_process(work_dir, env)
            output = await self._communicate(process, instructions, output_sink)
            exit_code = process.returncode or 0
        except asyncio.TimeoutError:
            await self._terminate(process)
            return self._handle_timeout(start_time)
        except OSError as exc:
            return self._handle_os_error(exc, start_time)
        except asyncio.CancelledError:
            logger.warning("Agent run cancelled; stopping agent process")
            await self._terminate(process)
            raise

        duration = time.monotonic() - start_time
        return self._build_result(exit_code, output, duration)

    async def _start_process(
        self, work_dir: Path, env: Optional[Mapping[str, str]]
    ) -> asyncio.subprocess.Process:
        logger.info(
            "Starting agent",
            extra={
                "work_dir": str(work_dir),
                "max_turns": self.max_turns,
                "timeout": self.timeout_seconds,
            },
        )

        process_env: Optional[Dict[str, str]] = None
        if env:
            process_env = {**os.environ, **env}

        return await asyncio.create_subprocess_exec(
            *self.build_command(),
            cwd=str(work_dir),
            env=process_env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        instructions: str,
        output_sink: Optional[Callable[[str], None]],
    ) -> str:
        """Feed stdin and drain both output streams until the process exits.

        Raises:
            asyncio.TimeoutError: If the configured timeout elapses.
        """
        lines: List[str] = []

        async def feed_stdin():
            if process.stdin is None:
                return
            try:
                process.stdin.write(instructions.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("Agent closed stdin before reading all instructions")
            finally:
                process.stdin.close()

        async def stream(name: str, reader: Optional[asyncio.StreamReader]):
            async for line in self._read_stream(reader):
                lines.append(line)
                self._emit_line(name, line, output_sink)

        async def supervise():
            await asyncio.gather(
                feed_stdin(),
                stream("stdout", process.stdout),
                stream("stderr", process.stderr),
            )
            await process.wait()

        await asyncio.wait_for(supervise(), timeout=self.timeout_seconds)
        return "\n".join(lines)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    def _emit_line(
        self,
        stream_name: str,
        line: str,
        output_sink: Optional[Callable[[str], None]],
    ) -> None:
        logger.debug("agent %s: %s", stream_name, line)
        if output_sink is not None:
            output_sink(line)

    async def _terminate(self, process: Optional[asyncio.subprocess.Process]) -> None:
        """Kill a still-running agent and wait for it to exit."""
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def _handle_timeout(self, start_time: float) -> AgentResult:
        duration = time.monotonic() - start_time
        logger.error("Agent timed out after %ss", self.timeout_seconds)
        return AgentResult(
            success=False,
            exit_code=-1,
            output=f"Process timed out after {self.timeout_seconds}s",
            hit_turn_limit=False,
            duration_seconds=duration,
        )

    def _handle_os_error(self, exc: OSError, start_time: float) -> AgentResult:
        duration = time.monotonic() - start_time
        logger.error("Failed to start agent: %s", exc)
        return AgentResult(
            success=False,
            exit_code=-1,
            output=f"Failed to start agent: {exc}",
            hit_turn_limit=False,
            duration_seconds=duration,
        )

    def _build_result(self, exit_code: int, output: str, duration: float) -> AgentResult:
        hit_turn_limit = self.turn_limit_marker in output
        is_success = exit_code == 0 and not hit_turn_limit

        if hit_turn_limit:
            logger.error(
                "Agent reached its turn limit after %.1fs",
                duration,
                extra={"max_turns": self.max_turns, "exit_code": exit_code},
            )
        elif is_success:
            logger.info("Agent completed successfully in %.1fs", duration)
        else:
            logger.error(
                "Agent failed with exit code %d in %.1fs",
                exit_code,
                duration,
            )

        return AgentResult(
            success=is_success,
            exit_code=exit_code,
            output=output,
            hit_turn_limit=hit_turn_limit,
            duration_seconds=duration,
        )
