"""Health monitoring for workspace containers.

Keeps one HealthRecord per tracked container and moves it through
starting -> healthy <-> unhealthy based on periodic inspect/stats polls.
The monitor subscribes itself to the container manager's event bus, so
containers are picked up on creation and dropped when stopped or removed.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from taskbox.config import settings
from taskbox.core.events import (
    ContainerCreated,
    ContainerDied,
    ContainerHealthChanged,
    ContainerRemoved,
    ContainerStarted,
    ContainerStopped,
)
from taskbox.core.models import (
    ContainerRecord,
    ContainerStats,
    ContainerStatus,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    RuntimeKind,
    RuntimeUnavailableError,
)

if TYPE_CHECKING:
    from taskbox.core.container_manager import ContainerManager

logger = logging.getLogger(__name__)

_OPTIONS = (
    "interval",
    "max_failures",
    "timeout",
    "monitor_all",
    "container_prefix",
    "memory_threshold_percent",
    "max_pids",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    """Periodically evaluates container health and publishes transitions."""

    def __init__(
        self,
        manager: "ContainerManager",
        interval: Optional[float] = None,
        max_failures: Optional[int] = None,
        timeout: Optional[float] = None,
        monitor_all: bool = False,
        container_prefix: Optional[str] = None,
        memory_threshold_percent: Optional[float] = None,
        max_pids: Optional[int] = None,
    ):
        self.manager = manager
        self.interval = settings.health_interval_seconds if interval is None else interval
        self.max_failures = settings.health_max_failures if max_failures is None else max_failures
        self.timeout = settings.health_check_timeout_seconds if timeout is None else timeout
        self.monitor_all = monitor_all
        self.container_prefix = manager.name_prefix if container_prefix is None else container_prefix
        self.memory_threshold_percent = (
            settings.health_memory_threshold_percent if memory_threshold_percent is None else memory_threshold_percent
        )
        self.max_pids = settings.health_max_pids if max_pids is None else max_pids

        self._records: dict[str, HealthRecord] = {}
        self._monitoring = False
        self._loop_task: Optional[asyncio.Task] = None
        self._poll_tasks: set[asyncio.Task] = set()

        bus = manager.events
        self._unsubscribers = [
            bus.subscribe(ContainerCreated, self._on_created),
            bus.subscribe(ContainerStarted, self._on_started),
            bus.subscribe(ContainerStopped, self._on_stopped),
            bus.subscribe(ContainerRemoved, self._on_removed),
            bus.subscribe(ContainerDied, self._on_died),
        ]

    # =========================================================================
    # Monitoring control
    # =========================================================================

    @property
    def is_active(self) -> bool:
        return self._monitoring

    async def start(self) -> None:
        """Run an initial poll, then keep polling every ``interval`` seconds."""
        if self._monitoring:
            return

        runtime = await self.manager.get_runtime()
        if runtime == RuntimeKind.NONE:
            raise RuntimeUnavailableError("No container runtime available for health monitoring")

        self._monitoring = True
        self._loop_task = asyncio.create_task(self._run_loop())
        await self.poll()
        logger.info(f"Health monitoring started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop scheduling polls. In-flight polls finish but their results are dropped."""
        if not self._monitoring:
            return
        self._monitoring = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Health monitoring stopped")

    def close(self) -> None:
        """Detach from the manager's event bus."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def update_options(self, **changes) -> None:
        """Change monitor options, restarting the poll loop if it is running."""
        unknown = set(changes) - set(_OPTIONS)
        if unknown:
            raise TypeError(f"Unknown health monitor options: {', '.join(sorted(unknown))}")

        was_active = self._monitoring
        if was_active:
            await self.stop()
        for name, value in changes.items():
            setattr(self, name, value)
        if was_active:
            await self.start()

    async def _run_loop(self) -> None:
        while self._monitoring:
            await asyncio.sleep(self.interval)
            if not self._monitoring:
                return
            # Polls run as their own tasks so stop() never cancels one mid-flight.
            task = asyncio.create_task(self.poll())
            self._poll_tasks.add(task)
            task.add_done_callback(self._poll_tasks.discard)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_health(self, container_id: str) -> Optional[HealthRecord]:
        return self._records.get(container_id)

    def health_records(self) -> dict[str, HealthRecord]:
        return dict(self._records)

    def summary(self) -> HealthSummary:
        records = list(self._records.values())
        total = len(records)
        return HealthSummary(
            is_monitoring=self._monitoring,
            total=total,
            healthy=sum(1 for r in records if r.status == HealthStatus.HEALTHY),
            unhealthy=sum(1 for r in records if r.status == HealthStatus.UNHEALTHY),
            starting=sum(1 for r in records if r.status == HealthStatus.STARTING),
            average_failing_streak=sum(r.failing_streak for r in records) / total if total else 0.0,
            last_check_time=max((r.last_check_time for r in records), default=None),
        )

    def should_monitor(self, container_name: str) -> bool:
        return self.monitor_all or container_name.lstrip("/").startswith(self.container_prefix)

    # =========================================================================
    # Checks
    # =========================================================================

    async def add_container(self, container_id: str) -> HealthRecord:
        """Start tracking a container and run its first check."""
        info = await self.manager.inspect_container(container_id)
        if info is None:
            raise LookupError(f"Container not found: {container_id}")
        record = await self._check(info)
        await self._apply(record)
        return record

    async def check_container(self, container_id: str) -> Optional[HealthRecord]:
        """Check one container now; None if it no longer exists."""
        info = await self.manager.inspect_container(container_id)
        if info is None:
            self._records.pop(container_id, None)
            return None
        record = await self._check(info)
        await self._apply(record)
        return record

    def remove_container(self, container_id: str) -> bool:
        return self._records.pop(container_id, None) is not None

    async def poll(self) -> None:
        """Check every target concurrently; one failing check never aborts the rest."""
        if not self._monitoring:
            return

        try:
            listed = await self.manager.list_containers()
        except Exception:
            logger.exception("Failed to list containers for health checks")
            listed = []

        targets = {c.id: c for c in listed if self.should_monitor(c.name)}
        missing = [cid for cid in self._records if cid not in targets]
        inspected = await asyncio.gather(
            *(self.manager.inspect_container(cid) for cid in missing), return_exceptions=True
        )
        for cid, info in zip(missing, inspected):
            if isinstance(info, ContainerRecord):
                targets[cid] = info
            elif info is None:
                logger.debug(f"Container {cid} is gone, dropping it from health monitoring")
                self._records.pop(cid, None)
            else:
                logger.warning(f"Inspect failed for container {cid}: {info}")

        infos = list(targets.values())
        results = await asyncio.gather(*(self._check(info) for info in infos), return_exceptions=True)

        if not self._monitoring:
            logger.debug("Monitoring stopped during poll, discarding results")
            return

        for info, result in zip(infos, results):
            if isinstance(result, HealthRecord):
                await self._apply(result)
            else:
                logger.warning(f"Health check failed for container {info.id}: {result}")

    async def _check(self, info: ContainerRecord) -> HealthRecord:
        try:
            return await asyncio.wait_for(self._evaluate(info), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failed(info, f"Health check timed out after {self.timeout}s")
        except Exception as exc:
            logger.warning(f"Health check error for container {info.id}: {exc}")
            return self._failed(info, str(exc))

    async def _evaluate(self, info: ContainerRecord) -> HealthRecord:
        existing = self._records.get(info.id)

        if info.status != ContainerStatus.RUNNING:
            if info.status == ContainerStatus.CREATED:
                return HealthRecord(
                    container_id=info.id,
                    container_name=info.name,
                    status=HealthStatus.STARTING,
                    failing_streak=existing.failing_streak if existing else 0,
                    last_check_time=_now(),
                    previous_status=existing.status if existing else None,
                )
            return HealthRecord(
                container_id=info.id,
                container_name=info.name,
                status=HealthStatus.UNHEALTHY,
                failing_streak=(existing.failing_streak if existing else 0) + 1,
                last_check_time=_now(),
                previous_status=existing.status if existing else None,
                last_check_exit_code=info.exit_code,
                error=f"Container is not running (status: {info.status.value})",
            )

        stats = await self.manager.get_stats(info.id)
        if stats is None:
            return self._failed(info, "Failed to get container statistics")

        problem = self.evaluate_stats(stats)
        if problem:
            return self._failed(info, problem)

        return HealthRecord(
            container_id=info.id,
            container_name=info.name,
            status=HealthStatus.HEALTHY,
            failing_streak=0,
            last_check_time=_now(),
            previous_status=existing.status if existing else None,
            last_check_output="Container is responsive and healthy",
        )

    def evaluate_stats(self, stats: ContainerStats) -> Optional[str]:
        """Return why the stats look unhealthy, or None if they look fine."""
        if stats.memory_percent > self.memory_threshold_percent:
            return f"Memory usage {stats.memory_percent:.1f}% exceeds {self.memory_threshold_percent:g}%"
        if stats.pids > self.max_pids:
            return f"PID count {stats.pids} exceeds {self.max_pids}"
        return None

    def _failed(self, info: ContainerRecord, error: str) -> HealthRecord:
        existing = self._records.get(info.id)
        streak = (existing.failing_streak if existing else 0) + 1
        return HealthRecord(
            container_id=info.id,
            container_name=info.name,
            status=HealthStatus.UNHEALTHY if streak >= self.max_failures else HealthStatus.STARTING,
            failing_streak=streak,
            last_check_time=_now(),
            previous_status=existing.status if existing else None,
            error=error,
        )

    async def _apply(self, record: HealthRecord) -> None:
        existing = self._records.get(record.container_id)
        self._records[record.container_id] = record
        if existing is None or existing.status != record.status:
            await self._publish(record)

    async def _publish(self, record: HealthRecord) -> None:
        if record.status == HealthStatus.UNHEALTHY:
            logger.warning(f"Container {record.container_name} is unhealthy: {record.error}")
        else:
            logger.info(f"Container {record.container_name} is {record.status.value}")
        await self.manager.events.publish(
            ContainerHealthChanged(
                container_id=record.container_id,
                container_name=record.container_name,
                status=record.status,
                failing_streak=record.failing_streak,
                previous_status=record.previous_status,
                task_id=self.manager.extract_task_id(record.container_name),
                error=record.error,
                timestamp=record.last_check_time,
            )
        )

    # =========================================================================
    # Lifecycle notifications
    # =========================================================================

    async def _on_created(self, event: ContainerCreated) -> None:
        if not event.success:
            return
        name = event.container_info.name if event.container_info else ""
        if not self.should_monitor(name):
            return
        try:
            await self.add_container(event.container_id)
        except LookupError as exc:
            logger.warning(f"Could not add container to health monitoring: {exc}")

    async def _on_started(self, event: ContainerStarted) -> None:
        existing = self._records.get(event.container_id)
        if existing is None or not event.success:
            return
        await self._apply(
            dataclasses.replace(
                existing,
                status=HealthStatus.STARTING,
                previous_status=existing.status,
                failing_streak=0,
                last_check_time=_now(),
                error=None,
            )
        )

    async def _on_stopped(self, event: ContainerStopped) -> None:
        if event.success:
            self.remove_container(event.container_id)

    async def _on_removed(self, event: ContainerRemoved) -> None:
        if event.success:
            self.remove_container(event.container_id)

    async def _on_died(self, event: ContainerDied) -> None:
        existing = self._records.get(event.container_id)
        if existing is None:
            return
        await self._apply(
            dataclasses.replace(
                existing,
                status=HealthStatus.UNHEALTHY,
                previous_status=existing.status,
                failing_streak=self.max_failures,
                last_check_time=_now(),
                last_check_exit_code=event.exit_code,
                error=f"Container died unexpectedly (exit code: {event.exit_code})",
            )
        )
