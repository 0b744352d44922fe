"""End-to-end checks against a real Docker or Podman installation.

Skipped unless TASKBOX_INTEGRATION=1 is set and a runtime is usable.
"""

from __future__ import annotations

import os
import uuid

import pytest
import pytest_asyncio

from taskbox.core.container_manager import ContainerManager
from taskbox.core.events import EventBus
from taskbox.core.models import ContainerConfig, ContainerStatus, RuntimeKind
from taskbox.core.runtime import RuntimeDetector

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(os.environ.get("TASKBOX_INTEGRATION") != "1", reason="set TASKBOX_INTEGRATION=1"),
]


@pytest_asyncio.fixture
async def live_manager(tmp_path):
    detector = RuntimeDetector()
    if await detector.best_runtime() == RuntimeKind.NONE:
        pytest.skip("no container runtime available")
    return ContainerManager(detector=detector, events=EventBus(), project_root=tmp_path, prefix="taskbox-it")


@pytest.mark.asyncio
async def test_container_round_trip(live_manager):
    task_id = uuid.uuid4().hex[:8]
    result = await live_manager.create_container(
        ContainerConfig(image="alpine:3.19", command=["sleep", "60"]), task_id, auto_start=True
    )
    assert result.success, result.error

    try:
        info = await live_manager.inspect_container(result.container_id)
        assert info.status == ContainerStatus.RUNNING
        assert live_manager.extract_task_id(info.name) == task_id

        exec_result = await live_manager.exec_command(result.container_id, "sh -c 'echo hello; exit 7'")
        assert exec_result.stdout.strip() == "hello"
        assert exec_result.exit_code == 7

        stats = await live_manager.get_stats(result.container_id)
        assert stats is not None and stats.pids >= 1

        listed = await live_manager.list_containers()
        assert result.container_id in {c.id for c in listed}
    finally:
        await live_manager.stop_container(result.container_id, timeout=1)
        removed = await live_manager.remove_container(result.container_id, force=True)
        assert removed.success, removed.error
