"""External command execution for OS probes."""

import asyncio
import contextlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from portscope.errors import ExternalToolFailure

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result from running an external command. Never raised, always returned."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def raise_for_failure(self, tool: str) -> None:
        """Convert a failed result into an ExternalToolFailure."""
        if not self.success:
            raise ExternalToolFailure(tool, self.error or f"exit code {self.exit_code}")


# Signature shared by run_command and the fakes used in tests
CommandRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str], timeout: float = 10.0) -> CommandResult:
    """Run a command without a shell and capture its output.

    Non-zero exit, timeout and a binary that is missing or cannot be
    executed all come back as an unsuccessful CommandResult.
    """
    if not argv:
        return CommandResult(success=False, error="No command provided")

    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "LC_ALL": "C"},
        )
    except FileNotFoundError:
        return CommandResult(success=False, error=f"{argv[0]}: command not found")
    except PermissionError as e:
        return CommandResult(success=False, error=f"{argv[0]}: {e}")
    except OSError as e:
        return CommandResult(success=False, error=f"{argv[0]}: cannot execute: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        return CommandResult(
            success=False,
            error=f"Command timed out after {timeout:g}s",
            duration_ms=(time.monotonic() - started) * 1000,
        )

    stdout_str = stdout.decode("utf-8", errors="replace")
    stderr_str = stderr.decode("utf-8", errors="replace")
    success = process.returncode == 0
    duration_ms = (time.monotonic() - started) * 1000

    logger.debug(f"{' '.join(argv)} exited {process.returncode} in {duration_ms:.0f}ms")

    return CommandResult(
        success=success,
        stdout=stdout_str,
        stderr=stderr_str,
        exit_code=process.returncode,
        error=None if success else (stderr_str.strip()[:200] or f"Exit code: {process.returncode}"),
        duration_ms=duration_ms,
    )
