"""Shared test fixtures for the taskbox test suite.

Provides a scripted command runner, a fixed runtime detector, fake
long-lived processes and a fake python-on-whales image client, so the core
can be exercised without a Docker or Podman daemon.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Optional, Sequence

import pytest
from python_on_whales.exceptions import DockerException, NoSuchImage

from taskbox.core.container_manager import ContainerManager
from taskbox.core.events import EventBus
from taskbox.core.image_builder import ImageBuilder
from taskbox.core.models import RuntimeKind
from taskbox.core.process import CommandResult


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


@dataclass
class _Rule:
    tokens: tuple[str, ...]
    results: list[CommandResult]
    sticky: CommandResult
    binary: Optional[str] = None

    def matches(self, command: list[str]) -> bool:
        if self.binary and command[0] != self.binary:
            return False
        return tuple(command[1:1 + len(self.tokens)]) == self.tokens


class FakeRunner:
    """Records argv and answers with scripted CommandResults.

    Rules match on the tokens after the runtime binary, e.g.
    ``runner.on("inspect", stdout=...)`` answers every ``docker inspect ...``.
    A rule given several results returns them in order, then keeps
    returning the last one. Later rules take precedence.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.spawned: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self._rules: list[_Rule] = []

    def on(
        self,
        *tokens: str,
        stdout: str = "",
        stderr: str = "",
        return_code: Optional[int] = 0,
        timed_out: bool = False,
        tool_available: bool = True,
        binary: Optional[str] = None,
    ) -> "FakeRunner":
        result = CommandResult(
            command=[],
            return_code=None if timed_out else return_code,
            stdout=stdout,
            stderr=stderr,
            duration=0.01,
            timed_out=timed_out,
            tool_available=tool_available,
        )
        self._rules.append(_Rule(tokens=tokens, results=[], sticky=result, binary=binary))
        return self

    def on_sequence(self, *tokens: str, outputs: Sequence[dict]) -> "FakeRunner":
        results = [
            CommandResult(command=[], return_code=o.get("return_code", 0), stdout=o.get("stdout", ""),
                          stderr=o.get("stderr", ""), duration=0.01)
            for o in outputs
        ]
        self._rules.append(_Rule(tokens=tokens, results=results[:-1], sticky=results[-1]))
        return self

    def calls_for(self, *tokens: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[1:1 + len(tokens)]) == tokens]

    async def run(self, command, *, timeout=None, cwd=None, env=None) -> CommandResult:
        command = list(command)
        self.calls.append(command)
        for rule in reversed(self._rules):
            if rule.matches(command):
                template = rule.results.pop(0) if rule.results else rule.sticky
                return CommandResult(
                    command=command,
                    return_code=template.return_code,
                    stdout=template.stdout,
                    stderr=template.stderr,
                    duration=template.duration,
                    timed_out=template.timed_out,
                    tool_available=template.tool_available,
                )
        return CommandResult(command=command, return_code=0, stdout="", stderr="", duration=0.01)

    def queue_process(self, process: "FakeProcess") -> None:
        self.processes.append(process)

    async def spawn(self, command):
        self.spawned.append(list(command))
        if not self.processes:
            raise AssertionError(f"No fake process queued for {command}")
        return self.processes.pop(0)


# ---------------------------------------------------------------------------
# Long-lived processes
# ---------------------------------------------------------------------------


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process backed by real StreamReaders.

    With ``keep_open`` the process keeps running until terminate()/kill()
    or finish(); otherwise it exits right away with ``return_code`` after
    its scripted output.
    """

    def __init__(
        self,
        stdout_lines: Sequence[str] = (),
        stderr_lines: Sequence[str] = (),
        return_code: int = 0,
        keep_open: bool = False,
        ignore_terminate: bool = False,
    ):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.pid = 4242
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()

        for line in stdout_lines:
            self.feed_stdout(line)
        for line in stderr_lines:
            self.feed_stderr(line)
        if not keep_open:
            self.finish(return_code)

    def feed_stdout(self, line: str) -> None:
        self.stdout.feed_data(f"{line}\n".encode())

    def feed_stderr(self, line: str) -> None:
        self.stderr.feed_data(f"{line}\n".encode())

    def finish(self, return_code: int = 0) -> None:
        if self.returncode is None:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            self.returncode = return_code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


# ---------------------------------------------------------------------------
# Runtime detection
# ---------------------------------------------------------------------------


class FakeDetector:
    """Reports a fixed runtime without probing the host."""

    def __init__(self, kind: RuntimeKind = RuntimeKind.DOCKER):
        self.kind = kind

    async def best_runtime(self, preferred=None) -> RuntimeKind:
        return self.kind


# ---------------------------------------------------------------------------
# python-on-whales image client
# ---------------------------------------------------------------------------


@dataclass
class FakeImageApi:
    images: dict[str, SimpleNamespace] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    fail_remove: set[str] = field(default_factory=set)

    def add(self, tag: str, image_id: str, size: int = 1024, created: Optional[datetime] = None):
        self.images[tag] = SimpleNamespace(
            id=image_id,
            size=size,
            created=created or datetime.now(timezone.utc),
            repo_tags=[tag],
        )

    def inspect(self, tag: str):
        if tag not in self.images:
            raise NoSuchImage(["docker", "image", "inspect", tag], 1, b"", b"No such image")
        return self.images[tag]

    def list(self):
        return list(self.images.values())

    def remove(self, tag: str, force: bool = False):
        if tag in self.fail_remove:
            raise DockerException(["docker", "image", "rm", tag], 1, b"", b"image is in use")
        self.removed.append(tag)
        self.images.pop(tag, None)


class FakeDockerClient:
    def __init__(self):
        self.image = FakeImageApi()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector(RuntimeKind.DOCKER)


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def image_builder(tmp_path, runner, detector, docker_client) -> ImageBuilder:
    return ImageBuilder(
        tmp_path,
        detector=detector,
        runner=runner,
        client_factory=lambda kind: docker_client,
        tag_prefix="taskbox",
    )


@pytest.fixture
def manager(tmp_path, runner, detector, image_builder) -> ContainerManager:
    return ContainerManager(
        detector=detector,
        runner=runner,
        image_builder=image_builder,
        events=EventBus(),
        prefix="taskbox",
        separator="-",
        include_timestamp=False,
        project_root=tmp_path,
    )


def inspect_line(
    container_id: str = "abc123def456",
    name: str = "/taskbox-task-1",
    image: str = "node:20-alpine",
    status: str = "running",
    exit_code: int = 0,
) -> str:
    return (
        f"{container_id}|{name}|{image}|{status}|2024-01-15T10:30:00.123456789Z"
        f"|2024-01-15T10:30:01.5Z|0001-01-01T00:00:00Z|{exit_code}"
    )
