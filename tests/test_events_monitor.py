"""Tests for the runtime event stream monitor."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import FakeProcess, inspect_line
from taskbox.core.events import ContainerDied
from taskbox.core.events_monitor import parse_event_line, signal_for_exit_code
from taskbox.core.models import RuntimeKind


def die_event(container_id="c1", name="taskbox-task-1", exit_code="1", **attributes):
    return json.dumps({
        "status": "die",
        "id": container_id,
        "Actor": {"Attributes": {"name": name, "exitCode": exit_code, **attributes}},
        "time": 1640995200,
    })


@pytest.fixture
def deaths(manager):
    seen = []
    manager.events.subscribe(ContainerDied, seen.append)
    return seen


class TestParsing:

    def test_docker_event(self):
        event = parse_event_line(die_event(exit_code="2"))

        assert event.status == "die"
        assert event.id == "c1"
        assert event.name == "taskbox-task-1"
        assert event.exit_code == 2
        assert event.time_unix_ms == 1640995200000

    def test_podman_event(self):
        event = parse_event_line(json.dumps({
            "Action": "died",
            "ID": "p1",
            "Actor": {"Attributes": {"name": "taskbox-p", "exitCode": "3"}},
            "timeNano": 1640995200000000000,
        }))

        assert event.status == "die"
        assert event.id == "p1"
        assert event.exit_code == 3
        assert event.time_unix_ms == 1640995200000

    def test_podman_flat_format(self):
        event = parse_event_line(json.dumps({
            "ID": "p2", "Name": "taskbox-q", "Status": "died", "ContainerExitCode": 4, "Type": "container",
        }))

        assert event.name == "taskbox-q"
        assert event.exit_code == 4

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_event_line("{not json")
        with pytest.raises(ValueError):
            parse_event_line("[1, 2]")
        assert parse_event_line(json.dumps({"status": "die"})) is None

    @pytest.mark.parametrize("payload", [
        {"status": "die", "id": "abc", "Actor": {"ID": "abc", "Attributes": "oops"}},
        {"status": "die", "id": "abc", "Actor": ["abc"]},
        {"status": "die", "id": "abc", "Attributes": 7},
    ])
    def test_non_object_actor_or_attributes(self, payload):
        with pytest.raises(ValueError):
            parse_event_line(json.dumps(payload))

    @pytest.mark.parametrize("code,expected", [(0, None), (1, None), (137, "SIGKILL"), (143, "SIGTERM"), (130, "SIGINT")])
    def test_signal_for_exit_code(self, code, expected):
        assert signal_for_exit_code(code) == expected


class TestCommand:

    def test_default_filters(self, manager):
        command = manager.events_monitor().build_command(RuntimeKind.DOCKER)

        assert command[:4] == ["docker", "events", "--format", "{{json .}}"]
        assert "type=container" in command
        assert "event=die" in command
        assert "label=taskbox.managed=true" in command

    def test_custom_filters(self, manager):
        monitor = manager.events_monitor(
            event_types=[],
            label_filters={"taskbox.managed": "true", "environment": "production"},
        )

        command = monitor.build_command(RuntimeKind.PODMAN)

        assert command[0] == "podman"
        assert not [arg for arg in command if arg.startswith("event=")]
        assert "label=environment=production" in command


class TestDeathHandling:

    @pytest.mark.asyncio
    async def test_death_notification(self, manager, runner, deaths):
        runner.on("inspect", stdout=inspect_line("c1", status="exited", exit_code=1))
        monitor = manager.events_monitor()

        await monitor.handle_line(die_event())

        died = deaths[0]
        assert died.container_id == "c1"
        assert died.task_id == "task-1"
        assert died.exit_code == 1
        assert died.signal is None
        assert died.oom_killed is False
        assert died.container_info.status.value == "exited"
        assert died.timestamp == datetime.fromtimestamp(1640995200, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_minimal_event_defaults(self, manager, runner, deaths):
        runner.on("inspect", return_code=1, stderr="No such object")
        monitor = manager.events_monitor()

        await monitor.handle_line(json.dumps({"status": "die", "id": "c9", "time": 1640995200}))

        assert deaths[0].exit_code == 1
        assert deaths[0].task_id is None
        assert deaths[0].container_info is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exit_code,attributes,signal,oom", [
        ("137", {}, "SIGKILL", True),
        ("137", {"signal": "SIGTERM"}, "SIGTERM", True),
        ("1", {"reason": "oom"}, None, True),
        ("1", {"oomkilled": "true"}, None, True),
        ("143", {}, "SIGTERM", False),
        ("0", {}, None, False),
    ])
    async def test_signal_and_oom_inference(self, manager, deaths, exit_code, attributes, signal, oom):
        monitor = manager.events_monitor()

        await monitor.handle_line(die_event(exit_code=exit_code, **attributes))

        assert deaths[0].signal == signal
        assert deaths[0].oom_killed is oom

    @pytest.mark.asyncio
    async def test_prior_oom_event_marks_death(self, manager, deaths):
        monitor = manager.events_monitor()

        await monitor.handle_line(json.dumps({"status": "oom", "id": "c1", "Actor": {"Attributes": {"name": "taskbox-t"}}}))
        await monitor.handle_line(die_event(name="taskbox-t", exit_code="1"))

        assert deaths[0].oom_killed is True

    @pytest.mark.asyncio
    async def test_foreign_containers_are_ignored(self, manager, deaths):
        monitor = manager.events_monitor()

        await monitor.handle_line(die_event(name="postgres-1"))

        assert deaths == []

    @pytest.mark.asyncio
    async def test_malformed_attributes_are_skipped(self, manager, deaths, caplog):
        monitor = manager.events_monitor()

        result = await monitor.handle_line(
            json.dumps({"status": "die", "id": "abc", "Actor": {"ID": "abc", "Attributes": "oops"}})
        )

        assert result is None
        assert deaths == []
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    async def test_other_statuses_are_not_deaths(self, manager, deaths):
        monitor = manager.events_monitor()

        result = await monitor.handle_line(json.dumps({"status": "start", "id": "c1"}))

        assert result is None
        assert deaths == []


class TestStream:

    @pytest.mark.asyncio
    async def test_stream_lifecycle(self, manager, runner, deaths, caplog):
        process = FakeProcess(keep_open=True)
        runner.queue_process(process)

        async with manager.events_monitor() as monitor:
            assert monitor.is_active
            await monitor.start()
            assert len(runner.spawned) == 1

            process.feed_stdout("garbage that is not json")
            process.feed_stdout(die_event(container_id="c1"))
            process.feed_stdout(die_event(container_id="c2", exit_code="0"))
            for _ in range(50):
                if len(deaths) == 2:
                    break
                await asyncio.sleep(0.01)

        assert [d.container_id for d in deaths] == ["c1", "c2"]
        assert "malformed" in caplog.text
        assert process.terminated is True
        assert monitor.is_active is False

    @pytest.mark.asyncio
    async def test_stubborn_process_is_killed(self, manager, runner):
        process = FakeProcess(keep_open=True, ignore_terminate=True)
        runner.queue_process(process)
        monitor = manager.events_monitor(grace_seconds=0.05)

        await monitor.start()
        await monitor.stop()

        assert process.killed is True

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, manager, runner):
        runner.queue_process(FakeProcess(keep_open=True))
        runner.queue_process(FakeProcess(keep_open=True))
        monitor = manager.events_monitor()

        await monitor.start()
        await monitor.stop()
        await monitor.start()

        assert len(runner.spawned) == 2
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_long_event_line_does_not_stop_the_stream(self, manager, runner, deaths):
        process = FakeProcess(keep_open=True)
        runner.queue_process(process)

        async with manager.events_monitor() as monitor:
            process.feed_stdout(die_event(container_id="c1", note="x" * 70000))
            process.feed_stdout(die_event(container_id="c2"))
            for _ in range(50):
                if len(deaths) == 2:
                    break
                await asyncio.sleep(0.01)
            assert monitor.is_active

        assert [d.container_id for d in deaths] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_line_handling_errors_are_logged_and_skipped(self, manager, runner, caplog):
        process = FakeProcess(keep_open=True)
        runner.queue_process(process)
        monitor = manager.events_monitor()
        monitor.handle_line = AsyncMock(side_effect=[RuntimeError("boom"), None])

        await monitor.start()
        process.feed_stdout(die_event(container_id="c1"))
        process.feed_stdout(die_event(container_id="c2"))
        for _ in range(50):
            if monitor.handle_line.await_count == 2:
                break
            await asyncio.sleep(0.01)

        assert monitor.handle_line.await_count == 2
        assert monitor.is_active
        assert "boom" in caplog.text
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_restart_after_process_died(self, manager, runner):
        first = FakeProcess(keep_open=True)
        runner.queue_process(first)
        runner.queue_process(FakeProcess(keep_open=True))
        monitor = manager.events_monitor()

        await monitor.start()
        first.finish(1)
        for _ in range(50):
            if not monitor.is_active:
                break
            await asyncio.sleep(0.01)
        assert monitor.is_active is False

        await monitor.start()

        assert len(runner.spawned) == 2
        assert monitor.is_active
        await monitor.stop()
