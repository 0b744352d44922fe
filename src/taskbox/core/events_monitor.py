"""Watching the runtime's event stream for container deaths.

Runs `docker events` / `podman events` with a JSON line format and turns
`die` events of workspace-owned containers into ContainerDied notifications
on the container manager's event bus.
"""

import asyncio
import json
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Sequence

from taskbox.config import settings
from taskbox.core.events import ContainerDied
from taskbox.core.models import RuntimeKind, RuntimeUnavailableError
from taskbox.core.process import iter_lines, terminate_process

if TYPE_CHECKING:
    from taskbox.core.container_manager import ContainerManager

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPES = ("create", "start", "stop", "die", "oom", "destroy")
OOM_EXIT_CODE = 137

# podman reports some actions under different names
_STATUS_ALIASES = {"died": "die", "remove": "destroy"}


@dataclass
class RuntimeEvent:
    """One normalized line from the runtime's event stream."""

    status: str
    id: str
    time_unix_ms: int
    name: Optional[str] = None
    image: Optional[str] = None
    exit_code: Optional[int] = None
    attributes: dict[str, str] = field(default_factory=dict)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    return str(value) if value else None


def parse_event_line(line: str) -> Optional[RuntimeEvent]:
    """Normalize a docker or podman JSON event; None if it is not usable.

    Raises ValueError for lines that are not JSON objects.
    """
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

    actor = data.get("Actor") or {}
    if not isinstance(actor, dict):
        raise ValueError(f"Expected Actor to be an object, got {type(actor).__name__}")
    attributes = actor.get("Attributes") or data.get("Attributes") or {}
    if not isinstance(attributes, dict):
        raise ValueError(f"Expected Attributes to be an object, got {type(attributes).__name__}")
    attributes = {str(k): str(v) for k, v in attributes.items()}

    status = str(data.get("status") or data.get("Action") or data.get("Status") or "").lower()
    status = _STATUS_ALIASES.get(status, status)
    container_id = data.get("id") or data.get("ID") or actor.get("ID")
    if not status or not container_id:
        return None

    time_nano = _as_int(data.get("timeNano"))
    if time_nano is not None:
        time_ms = time_nano // 1_000_000
    else:
        seconds = _as_int(data.get("time"))
        time_ms = seconds * 1000 if seconds is not None else int(datetime.now(timezone.utc).timestamp() * 1000)

    exit_code = _as_int(attributes.get("exitCode"))
    if exit_code is None:
        exit_code = _as_int(data.get("ContainerExitCode"))

    return RuntimeEvent(
        status=status,
        id=str(container_id),
        time_unix_ms=time_ms,
        name=_as_str(attributes.get("name") or data.get("Name") or data.get("name")),
        image=_as_str(attributes.get("image") or data.get("Image") or data.get("from")),
        exit_code=exit_code,
        attributes=attributes,
    )


def signal_for_exit_code(exit_code: int) -> Optional[str]:
    """Exit codes above 128 mean the process was killed by signal (code - 128)."""
    if exit_code <= 128:
        return None
    try:
        return signal.Signals(exit_code - 128).name
    except ValueError:
        return None


def is_oom_event(event: RuntimeEvent) -> bool:
    if event.attributes.get("oomkilled", "").lower() == "true":
        return True
    return event.attributes.get("reason", "").lower() == "oom"


class EventsMonitor:
    """Owns one `events` subprocess and dispatches what it reports."""

    def __init__(
        self,
        manager: "ContainerManager",
        event_types: Optional[Sequence[str]] = None,
        name_prefix: Optional[str] = None,
        label_filters: Optional[dict[str, str]] = None,
        grace_seconds: Optional[float] = None,
    ):
        self.manager = manager
        self.event_types = list(DEFAULT_EVENT_TYPES if event_types is None else event_types)
        self.name_prefix = manager.name_prefix if name_prefix is None else name_prefix
        self.label_filters = (
            {f"{manager.prefix}.managed": "true"} if label_filters is None else dict(label_filters)
        )
        self.grace_seconds = settings.process_grace_seconds if grace_seconds is None else grace_seconds

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._oom_seen: set[str] = set()

    @property
    def is_active(self) -> bool:
        if self._proc is None or self._proc.returncode is not None:
            return False
        return self._reader is not None and not self._reader.done()

    def build_command(self, runtime: RuntimeKind) -> list[str]:
        command = [runtime.value, "events", "--format", "{{json .}}", "--filter", "type=container"]
        for event_type in self.event_types:
            command.extend(["--filter", f"event={event_type}"])
        for key, value in self.label_filters.items():
            command.extend(["--filter", f"label={key}={value}"])
        return command

    async def start(self) -> None:
        """Spawn the events process. Starting an active monitor is a no-op."""
        if self.is_active:
            logger.debug("Events monitor already running")
            return
        # a previous process or its reader may have died on its own
        if self._proc is not None:
            await terminate_process(self._proc, self.grace_seconds)
            self._proc = None
        await self._reap_readers()

        runtime = await self.manager.get_runtime()
        if runtime == RuntimeKind.NONE:
            raise RuntimeUnavailableError()

        self._proc = await self.manager.runner.spawn(self.build_command(runtime))
        self._reader = asyncio.create_task(self._read_events(self._proc))
        self._stderr_reader = asyncio.create_task(self._read_errors(self._proc))
        logger.info(f"Events monitor started ({runtime.value}, prefix {self.name_prefix!r})")

    async def stop(self) -> None:
        """Terminate the events process: graceful first, forced after the grace period."""
        proc, self._proc = self._proc, None
        if proc is not None:
            await terminate_process(proc, self.grace_seconds)
        await self._reap_readers()
        self._oom_seen.clear()
        if proc is not None:
            logger.info("Events monitor stopped")

    async def _reap_readers(self) -> None:
        for task in (self._reader, self._stderr_reader):
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        self._reader = self._stderr_reader = None

    async def __aenter__(self) -> "EventsMonitor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _read_events(self, proc: asyncio.subprocess.Process) -> None:
        async for raw in iter_lines(proc.stdout):
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            try:
                await self.handle_line(line)
            except Exception:
                logger.exception(f"Skipping event line that could not be handled: {line[:200]}")
        if self._proc is proc:
            logger.warning(f"Events process exited unexpectedly (code {await proc.wait()})")

    async def _read_errors(self, proc: asyncio.subprocess.Process) -> None:
        async for raw in iter_lines(proc.stderr):
            line = raw.decode(errors="replace").strip()
            if line:
                logger.warning(f"Events process: {line}")

    async def handle_line(self, line: str) -> Optional[ContainerDied]:
        """Process one event line; malformed lines are logged and skipped."""
        try:
            event = parse_event_line(line)
        except ValueError as exc:
            logger.warning(f"Skipping malformed event line: {exc}")
            return None
        if event is None:
            return None

        if event.name and not event.name.lstrip("/").startswith(self.name_prefix):
            return None

        if event.status == "oom":
            self._oom_seen.add(event.id)
            return None
        if event.status != "die":
            logger.debug(f"Container {event.id}: {event.status}")
            return None

        try:
            return await self._handle_death(event)
        except Exception:
            logger.exception(f"Failed to handle death of container {event.id}")
            return None

    async def _handle_death(self, event: RuntimeEvent) -> Optional[ContainerDied]:
        info = await self.manager.inspect_container(event.id)
        name = event.name or (info.name if info else None)
        if name and not name.lstrip("/").startswith(self.name_prefix):
            return None

        exit_code = event.exit_code if event.exit_code is not None else 1
        oom_killed = exit_code == OOM_EXIT_CODE or is_oom_event(event) or event.id in self._oom_seen
        self._oom_seen.discard(event.id)

        died = ContainerDied(
            container_id=event.id,
            task_id=self.manager.extract_task_id(name) if name else None,
            container_info=info,
            timestamp=datetime.fromtimestamp(event.time_unix_ms / 1000, tz=timezone.utc),
            exit_code=exit_code,
            signal=event.attributes.get("signal") or signal_for_exit_code(exit_code),
            oom_killed=oom_killed,
        )
        logger.info(
            f"Container {event.id} died (exit code {exit_code}"
            + (f", {died.signal}" if died.signal else "")
            + (", OOM killed" if oom_killed else "")
            + ")"
        )
        await self.manager.events.publish(died)
        return died
