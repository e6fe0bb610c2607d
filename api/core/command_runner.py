"""
External process execution.

Runs the ACME client and the nginx binary with a bounded timeout and
captured output. A process that outlives its timeout, or whose caller is
cancelled, is killed and reaped before control returns, so no orphaned
process keeps mutating files after a lock is released.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class CommandTimeout(Exception):
    """Command exceeded its timeout and was killed."""

    def __init__(self, command: list[str], timeout: float, stdout: str = "", stderr: str = ""):
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command timed out after {timeout}s: {command[0]}")


@dataclass
class CommandResult:
    """Outcome of one external command."""

    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stderr first since most tools report errors there."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


class CommandRunner:
    """Executes external commands with timeout and captured output."""

    def __init__(self, default_timeout: float = 60):
        self.default_timeout = default_timeout

    async def run(
        self,
        command: list[str],
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            command: Program and arguments
            timeout: Seconds before the process is killed
            env: Extra environment variables layered over the current environment
            cwd: Working directory

        Returns:
            CommandResult with exit code and decoded output

        Raises:
            CommandTimeout: If the process did not finish in time
            FileNotFoundError: If the program does not exist
        """
        timeout = timeout or self.default_timeout
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        # Environment is not logged; it carries provider credentials
        logger.debug(f"Running command: {' '.join(command)}")
        start = time.monotonic()

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
            cwd=cwd,
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            stdout, stderr = await self._kill(proc)
            logger.error(f"Command timed out after {timeout}s: {command[0]}")
            raise CommandTimeout(command, timeout, _decode(stdout), _decode(stderr))
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        result = CommandResult(
            command=command,
            exit_code=proc.returncode,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            duration_ms=duration_ms,
        )

        if result.success:
            logger.debug(f"Command {command[0]} finished in {duration_ms}ms")
        else:
            logger.warning(f"Command {command[0]} exited with {result.exit_code} after {duration_ms}ms")

        return result

    async def _kill(self, proc: asyncio.subprocess.Process) -> tuple[bytes | None, bytes | None]:
        """Kill the process and wait for it to exit."""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        return await asyncio.shield(proc.communicate())


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


# Singleton instance
_command_runner: CommandRunner | None = None


def get_command_runner() -> CommandRunner:
    """Get the global command runner instance."""
    global _command_runner
    if _command_runner is None:
        _command_runner = CommandRunner()
    return _command_runner
