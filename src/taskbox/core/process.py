"""Subprocess plumbing for driving the container CLI.

Every runtime interaction is an out-of-process call. Commands are spawned
without a shell, so arguments are passed through verbatim; the quoted text
form exists for logs and error messages only.
"""

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

# Pipe buffer for long-lived streams; longer lines are read in pieces.
STREAM_LIMIT = 1024 * 1024


def quote_command(command: Sequence[str]) -> str:
    """Render argv as a shell-safe string, quoting each argument separately."""
    return shlex.join(str(part) for part in command)


@dataclass
class CommandResult:
    """Outcome of one external command execution."""

    command: Sequence[str]
    return_code: Optional[int]
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    tool_available: bool = True
    exception: Optional[BaseException] = None

    def succeeded(self) -> bool:
        """Return True when the command finished with exit code 0."""
        return self.return_code == 0 and not self.timed_out and self.tool_available

    @property
    def command_text(self) -> str:
        return quote_command(self.command)


class CommandRunner:
    """Thin async wrapper over subprocess that captures execution metadata."""

    async def run(
        self,
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Execute a command and capture stdout, stderr, timing and failures.

        Never raises for a failing command: timeouts, missing binaries and
        non-zero exits all come back as a CommandResult.
        """
        start = time.monotonic()
        logger.debug(f"Executing command: {quote_command(command)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            return CommandResult(
                command=command,
                return_code=None,
                stdout="",
                stderr=f"Command not found: {command[0]}",
                duration=time.monotonic() - start,
                tool_available=False,
                exception=exc,
            )
        except (OSError, ValueError) as exc:
            # ValueError: arguments the OS cannot pass, e.g. an embedded NUL
            return CommandResult(
                command=command,
                return_code=None,
                stdout="",
                stderr=str(exc),
                duration=time.monotonic() - start,
                exception=exc,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            duration = time.monotonic() - start
            logger.warning(f"Command timed out after {duration:.2f}s: {quote_command(command)}")
            return CommandResult(
                command=command,
                return_code=None,
                stdout="",
                stderr="",
                duration=duration,
                timed_out=True,
                exception=exc,
            )

        return CommandResult(
            command=command,
            return_code=proc.returncode,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
            duration=time.monotonic() - start,
        )

    async def spawn(self, command: Sequence[str]) -> asyncio.subprocess.Process:
        """Start a long-lived process with piped stdout and stderr."""
        logger.debug(f"Spawning process: {quote_command(command)}")
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )


async def terminate_process(proc: asyncio.subprocess.Process, grace_seconds: float) -> Optional[int]:
    """Ask a process to exit, then kill it if it outlives the grace period."""
    if proc.returncode is not None:
        return proc.returncode

    try:
        proc.terminate()
    except ProcessLookupError:
        return await proc.wait()

    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        return await proc.wait()


async def iter_lines(reader: asyncio.StreamReader, max_line_bytes: int = STREAM_LIMIT) -> AsyncIterator[bytes]:
    """Yield lines from a pipe without tripping its buffer limit.

    Lines longer than ``max_line_bytes`` come out in pieces of that size,
    the last piece carrying the newline. A trailing fragment without a
    newline is yielded at EOF.
    """
    pending = bytearray()
    split = False
    while True:
        try:
            chunk = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            pending += exc.partial
            if pending:
                yield bytes(pending)
            return
        except asyncio.LimitOverrunError as exc:
            pending += await reader.read(exc.consumed)
            while len(pending) >= max_line_bytes:
                if not split:
                    logger.warning(f"Splitting an output line longer than {max_line_bytes} bytes")
                split = True
                yield bytes(pending[:max_line_bytes])
                del pending[:max_line_bytes]
            continue
        pending += chunk
        # the newline alone closes a line that was already emitted in full pieces
        if not (split and pending == b"\n"):
            yield bytes(pending)
        pending.clear()
        split = False
