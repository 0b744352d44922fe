"""Streaming container logs through `docker logs` / `podman logs`.

A ContainerLogStream owns one logs subprocess. Lines from its stdout and
stderr pipes are pushed onto a queue as LogEntry objects and consumed with
``async for``. A stream is single-use: once it has ended it cannot be
restarted.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

from taskbox.config import settings
from taskbox.core.formats import parse_timestamp
from taskbox.core.models import LogEntry, LogStreamError, RuntimeKind, RuntimeUnavailableError
from taskbox.core.process import CommandRunner, iter_lines, terminate_process

logger = logging.getLogger(__name__)

STREAMS = ("stdout", "stderr", "both")


def parse_log_line(line: str, stream: str, timestamps: bool) -> LogEntry:
    """Split an optional leading RFC3339 timestamp off a log line."""
    if timestamps:
        head, _, rest = line.partition(" ")
        parsed = parse_timestamp(head)
        if parsed is not None:
            return LogEntry(timestamp=parsed, stream=stream, message=rest, raw=line)
    return LogEntry(timestamp=datetime.now(timezone.utc), stream=stream, message=line, raw=line)


class ContainerLogStream:
    """Async iterator over a container's log lines."""

    def __init__(
        self,
        container_id: str,
        runtime_resolver: Callable[[], Awaitable[RuntimeKind]],
        runner: Optional[CommandRunner] = None,
        follow: bool = False,
        tail: Optional[Union[int, str]] = None,
        timestamps: bool = False,
        since: Optional[str] = None,
        until: Optional[str] = None,
        stream: str = "both",
        grace_seconds: Optional[float] = None,
    ):
        if stream not in STREAMS:
            raise ValueError(f"stream must be one of {STREAMS}, got {stream!r}")
        self.container_id = container_id
        self.runner = runner or CommandRunner()
        self.follow = follow
        self.tail = tail
        self.timestamps = timestamps
        self.since = since
        self.until = until
        self.stream = stream
        self.grace_seconds = settings.process_grace_seconds if grace_seconds is None else grace_seconds

        self._runtime_resolver = runtime_resolver
        self._queue: asyncio.Queue[Optional[LogEntry]] = asyncio.Queue()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._error: Optional[LogStreamError] = None
        self._started = False
        self._stopping = False
        self._ended = False

    def build_command(self, runtime: RuntimeKind) -> list[str]:
        command = [runtime.value, "logs"]
        if self.follow:
            command.append("--follow")
        if self.timestamps:
            command.append("--timestamps")
        if self.tail is not None:
            command.extend(["--tail", str(self.tail)])
        if self.since:
            command.extend(["--since", self.since])
        if self.until:
            command.extend(["--until", self.until])
        command.append(self.container_id)
        return command

    @property
    def is_active(self) -> bool:
        return self._started and not self._ended and not self._stopping

    async def start(self) -> None:
        """Spawn the logs process; raises if the stream was already used."""
        if self._started:
            raise RuntimeError("Log stream has already been started and cannot be restarted")
        self._started = True

        runtime = await self._runtime_resolver()
        if runtime == RuntimeKind.NONE:
            self._ended = True
            raise RuntimeUnavailableError()

        self._proc = await self.runner.spawn(self.build_command(runtime))
        readers = [
            asyncio.create_task(self._read(self._proc.stdout, "stdout")),
            asyncio.create_task(self._read(self._proc.stderr, "stderr")),
        ]
        self._watcher = asyncio.create_task(self._watch(readers))
        logger.debug(f"Streaming logs for container {self.container_id}")

    async def _read(self, reader: Optional[asyncio.StreamReader], stream: str) -> None:
        if reader is None:
            return
        # Unrequested pipes are still drained so the child never blocks on them.
        wanted = self.stream in (stream, "both")
        async for raw in iter_lines(reader):
            line = raw.decode(errors="replace").rstrip("\r\n")
            if stream == "stderr":
                self._stderr_tail.append(line)
            if wanted:
                await self._queue.put(parse_log_line(line, stream, self.timestamps))

    async def _watch(self, readers: list[asyncio.Task]) -> None:
        try:
            await asyncio.wait(readers, return_when=asyncio.FIRST_EXCEPTION)
            failures = [task.exception() for task in readers if task.done() and task.exception() is not None]
            if failures:
                # an undrained pipe would block the child forever
                return_code = await terminate_process(self._proc, self.grace_seconds)
            else:
                return_code = await self._proc.wait()
            await asyncio.gather(*readers, return_exceptions=True)
            if failures and not self._stopping:
                self._error = LogStreamError(f"Reading logs for {self.container_id} failed: {failures[0]}")
                logger.warning(str(self._error))
            elif return_code != 0 and not self._stopping:
                detail = "; ".join(line for line in self._stderr_tail if line.strip())
                self._error = LogStreamError(
                    f"Log stream for {self.container_id} exited with code {return_code}"
                    + (f": {detail}" if detail else "")
                )
                logger.warning(str(self._error))
        finally:
            await self._queue.put(None)

    async def stop(self) -> None:
        """Terminate the logs process: graceful first, forced after the grace period."""
        if self._proc is None:
            self._started = True
            self._ended = True
            return
        self._stopping = True
        await terminate_process(self._proc, self.grace_seconds)
        if self._watcher is not None:
            await self._watcher

    async def collect(self) -> list[LogEntry]:
        """Read the stream to its end. Only meaningful without ``follow``."""
        return [entry async for entry in self]

    def __aiter__(self) -> "ContainerLogStream":
        return self

    async def __anext__(self) -> LogEntry:
        if self._ended:
            raise StopAsyncIteration
        if not self._started:
            await self.start()

        entry = await self._queue.get()
        if entry is None:
            self._ended = True
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return entry

    async def __aenter__(self) -> "ContainerLogStream":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
