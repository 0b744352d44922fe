"""Container lifecycle and health notifications.

All notifications form one closed set of frozen dataclasses, dispatched by
exact type through an EventBus. Subscribers register for a concrete event
class and receive only instances of it.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar, Union

from taskbox.core.models import ContainerRecord, HealthStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LifecycleEvent:
    """Fields shared by every container lifecycle notification."""

    container_id: str
    success: bool = True
    task_id: Optional[str] = None
    container_info: Optional[ContainerRecord] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ContainerCreated(LifecycleEvent):
    """A create command finished."""


@dataclass(frozen=True)
class ContainerStarted(LifecycleEvent):
    """A start command finished."""


@dataclass(frozen=True)
class ContainerStopped(LifecycleEvent):
    """A stop command finished."""


@dataclass(frozen=True)
class ContainerRemoved(LifecycleEvent):
    """A remove command finished."""


@dataclass(frozen=True)
class ContainerDied(LifecycleEvent):
    """The runtime reported that a container's main process exited."""

    exit_code: int = 0
    signal: Optional[str] = None
    oom_killed: bool = False


@dataclass(frozen=True)
class ContainerHealthChanged:
    """A monitored container moved between health states."""

    container_id: str
    container_name: str
    status: HealthStatus
    failing_streak: int
    previous_status: Optional[HealthStatus] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


ContainerEvent = Union[
    ContainerCreated,
    ContainerStarted,
    ContainerStopped,
    ContainerRemoved,
    ContainerDied,
    ContainerHealthChanged,
]

EVENT_TYPES: tuple[type, ...] = (
    ContainerCreated,
    ContainerStarted,
    ContainerStopped,
    ContainerRemoved,
    ContainerDied,
    ContainerHealthChanged,
)

E = TypeVar("E", bound=ContainerEvent)
Handler = Callable[[E], Union[None, Awaitable[None]]]


class EventBus:
    """Typed publish/subscribe channel for container notifications."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable]] = {t: [] for t in EVENT_TYPES}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        if event_type not in self._handlers:
            raise TypeError(f"Unknown container event type: {event_type!r}")
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: ContainerEvent) -> None:
        """Deliver an event to its subscribers.

        Handlers run in subscription order. A failing handler is logged and
        does not prevent delivery to the others.
        """
        handlers = self._handlers.get(type(event))
        if handlers is None:
            raise TypeError(f"Unknown container event type: {type(event)!r}")

        for handler in list(handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Handler {handler!r} failed for {type(event).__name__}")
