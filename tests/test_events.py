"""Tests for the typed notification bus."""

from __future__ import annotations

import pytest

from taskbox.core.events import (
    ContainerCreated,
    ContainerDied,
    ContainerHealthChanged,
    EventBus,
)
from taskbox.core.models import HealthStatus


class TestEventBus:

    @pytest.mark.asyncio
    async def test_dispatch_by_exact_type(self):
        bus = EventBus()
        created, died = [], []
        bus.subscribe(ContainerCreated, created.append)
        bus.subscribe(ContainerDied, died.append)

        await bus.publish(ContainerDied(container_id="abc", exit_code=137, oom_killed=True))

        assert created == []
        assert died[0].exit_code == 137
        assert died[0].oom_killed is True

    @pytest.mark.asyncio
    async def test_async_and_sync_handlers(self):
        bus = EventBus()
        order = []

        async def async_handler(event):
            order.append("async")

        bus.subscribe(ContainerCreated, lambda event: order.append("sync"))
        bus.subscribe(ContainerCreated, async_handler)

        await bus.publish(ContainerCreated(container_id="abc"))

        assert order == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ContainerCreated, broken)
        bus.subscribe(ContainerCreated, received.append)

        await bus.publish(ContainerCreated(container_id="abc"))

        assert len(received) == 1
        assert "boom" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(ContainerHealthChanged, received.append)

        unsubscribe()
        unsubscribe()
        await bus.publish(
            ContainerHealthChanged(
                container_id="abc", container_name="taskbox-1", status=HealthStatus.HEALTHY, failing_streak=0
            )
        )

        assert received == []
        assert bus.handler_count(ContainerHealthChanged) == 0

    def test_unknown_event_type(self):
        with pytest.raises(TypeError):
            EventBus().subscribe(dict, print)

    def test_events_are_immutable(self):
        event = ContainerCreated(container_id="abc", task_id="t1")

        with pytest.raises(AttributeError):
            event.task_id = "t2"
        assert event.success is True
        assert event.timestamp.tzinfo is not None
