"""Container management for taskbox workspaces.

Drives the docker/podman CLI directly. Container state is never owned here:
every ContainerRecord is re-derived from a fresh `inspect`, and the manager
only issues commands and reports what the runtime says happened.
"""

import asyncio
import logging
import re
import shlex
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Sequence, Union

from taskbox.config import settings
from taskbox.core.events import (
    ContainerCreated,
    ContainerRemoved,
    ContainerStarted,
    ContainerStopped,
    EventBus,
)
from taskbox.core.events_monitor import EventsMonitor
from taskbox.core.formats import (
    INSPECT_FORMAT,
    PS_FORMAT,
    STATS_FORMAT,
    format_log_time,
    parse_inspect_output,
    parse_stats_line,
    to_base36,
)
from taskbox.core.image_builder import ImageBuilder
from taskbox.core.log_stream import ContainerLogStream
from taskbox.core.models import (
    ContainerConfig,
    ContainerOperationResult,
    ContainerRecord,
    ContainerStats,
    ExecResult,
    ImageBuildConfig,
    ResourceLimits,
    RuntimeKind,
    RuntimeUnavailableError,
)
from taskbox.core.process import CommandResult, CommandRunner, quote_command
from taskbox.core.runtime import RuntimeDetector, get_runtime_detector

logger = logging.getLogger(__name__)

EXEC_TIMEOUT_EXIT_CODE = 124

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


# =============================================================================
# Manager
# =============================================================================


class ContainerManager:
    """Manages workspace containers through the docker/podman CLI."""

    def __init__(
        self,
        detector: Optional[RuntimeDetector] = None,
        runner: Optional[CommandRunner] = None,
        image_builder: Optional[ImageBuilder] = None,
        events: Optional[EventBus] = None,
        prefix: Optional[str] = None,
        separator: Optional[str] = None,
        include_timestamp: Optional[bool] = None,
        preferred_runtime: Optional[Union[RuntimeKind, str]] = None,
        project_root: Union[str, Path] = ".",
        command_timeout: Optional[float] = None,
        inspect_timeout: Optional[float] = None,
    ):
        self.detector = detector or get_runtime_detector()
        self.runner = runner or CommandRunner()
        self.image_builder = image_builder or ImageBuilder(
            project_root, detector=self.detector, runner=self.runner
        )
        self.events = events or EventBus()
        self.prefix = prefix or settings.container_prefix
        self.separator = separator or settings.name_separator
        self.include_timestamp = (
            settings.include_timestamp if include_timestamp is None else include_timestamp
        )
        self.preferred_runtime = preferred_runtime or settings.preferred_runtime
        self.command_timeout = command_timeout or settings.command_timeout_seconds
        self.inspect_timeout = inspect_timeout or settings.inspect_timeout_seconds

    async def get_runtime(self) -> RuntimeKind:
        return await self.detector.best_runtime(self.preferred_runtime)

    # =========================================================================
    # Naming
    # =========================================================================

    @property
    def name_prefix(self) -> str:
        return f"{self.prefix}{self.separator}"

    def generate_container_name(self, task_id: str, include_timestamp: Optional[bool] = None) -> str:
        """prefix + sep + sanitized task id [+ sep + base36 timestamp]."""
        parts = [self.prefix, _INVALID_NAME_CHARS.sub("_", task_id)]
        if self.include_timestamp if include_timestamp is None else include_timestamp:
            parts.append(to_base36(int(time.time() * 1000)))
        return self.separator.join(parts)

    def extract_task_id(self, container_name: str) -> Optional[str]:
        """Recover the (sanitized) task id from a container name."""
        name = container_name.lstrip("/")
        if not name.startswith(self.name_prefix):
            return None
        task_id = name[len(self.name_prefix):]
        if self.include_timestamp and self.separator in task_id:
            task_id = task_id.rsplit(self.separator, 1)[0]
        return task_id or None

    def is_workspace_container(self, container_name: str) -> bool:
        return container_name.lstrip("/").startswith(self.name_prefix)

    # =========================================================================
    # Command construction
    # =========================================================================

    def build_create_command(
        self,
        runtime: RuntimeKind,
        config: ContainerConfig,
        container_name: str,
        image: str,
        task_id: Optional[str] = None,
    ) -> list[str]:
        """Build argv for `create`; one element per flag and per value."""
        command = [runtime.value, "create", "--name", container_name]

        for host_path, container_path in config.volumes.items():
            command.extend(["-v", f"{host_path}:{container_path}"])

        for key, value in config.environment.items():
            command.extend(["-e", f"{key}={value}"])

        if config.resource_limits:
            command.extend(self.build_resource_limit_args(config.resource_limits))

        if config.network_mode:
            command.extend(["--network", config.network_mode])
        if config.working_dir:
            command.extend(["-w", config.working_dir])
        if config.user:
            command.extend(["--user", config.user])

        for key, value in config.labels.items():
            command.extend(["--label", f"{key}={value}"])
        command.extend(["--label", f"{self.prefix}.managed=true"])
        command.extend(["--label", f"{self.prefix}.container-name={container_name}"])
        if task_id:
            command.extend(["--label", f"{self.prefix}.task-id={task_id}"])

        entry_args: list[str] = []
        if config.entrypoint:
            command.extend(["--entrypoint", config.entrypoint[0]])
            entry_args = list(config.entrypoint[1:])

        if config.auto_remove:
            command.append("--rm")
        if config.privileged:
            command.append("--privileged")
        for option in config.security_opts:
            command.extend(["--security-opt", option])
        for cap in config.cap_add:
            command.extend(["--cap-add", cap])
        for cap in config.cap_drop:
            command.extend(["--cap-drop", cap])

        command.append(image)
        command.extend(entry_args)
        command.extend(config.command)
        return command

    @staticmethod
    def build_resource_limit_args(limits: ResourceLimits) -> list[str]:
        args: list[str] = []
        if limits.memory:
            args.extend(["--memory", limits.memory])
        if limits.memory_reservation:
            args.extend(["--memory-reservation", limits.memory_reservation])
        if limits.memory_swap:
            args.extend(["--memory-swap", limits.memory_swap])
        if limits.cpu is not None:
            args.extend(["--cpus", f"{limits.cpu:g}"])
        if limits.cpu_shares is not None:
            args.extend(["--cpu-shares", str(limits.cpu_shares)])
        if limits.cpu_quota is not None:
            args.extend(["--cpu-quota", str(limits.cpu_quota)])
        if limits.pids_limit is not None:
            args.extend(["--pids-limit", str(limits.pids_limit)])
        return args

    @staticmethod
    def _command_failure(result: CommandResult, action: str) -> Optional[str]:
        # Any non-whitespace stderr counts as failure, even with exit code 0.
        if not result.tool_available:
            return f"{action}: {result.stderr}"
        if result.timed_out:
            return f"{action}: timed out after {result.duration:.1f}s"
        if result.return_code != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.return_code}"
            return f"{action}: {detail}"
        if result.stderr.strip():
            return f"{action}: {result.stderr.strip()}"
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _resolve_image(self, config: ContainerConfig) -> Optional[str]:
        """Build the configured Dockerfile, falling back to ``config.image``."""
        if not config.dockerfile:
            return config.image

        dockerfile = Path(config.dockerfile)
        if not dockerfile.is_absolute():
            dockerfile = self.image_builder.project_root / dockerfile
        if not dockerfile.is_file():
            logger.warning(f"Dockerfile {dockerfile} not found, using image {config.image}")
            return config.image

        build = await self.image_builder.build_image(
            ImageBuildConfig(
                dockerfile_path=config.dockerfile,
                build_context=config.build_context,
                image_tag=config.image_tag,
                build_args=config.build_args,
            )
        )
        if build.success and build.image_info:
            return build.image_info.tag

        logger.warning(f"Image build failed ({build.error}), falling back to image {config.image}")
        return config.image

    async def create_container(
        self,
        config: ContainerConfig,
        task_id: str,
        auto_start: bool = False,
        name_override: Optional[str] = None,
    ) -> ContainerOperationResult:
        """Create (and optionally start) a workspace container for a task.

        If auto-start fails the freshly created container is removed again
        and the start failure is returned.
        """
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                result = ContainerOperationResult(success=False, error=str(RuntimeUnavailableError()))
                await self.events.publish(
                    ContainerCreated(container_id="", success=False, task_id=task_id, error=result.error)
                )
                return result

            image = await self._resolve_image(config)
            if not image:
                error = "Container creation failed: no image available (Dockerfile build failed)"
                await self.events.publish(
                    ContainerCreated(container_id="", success=False, task_id=task_id, error=error)
                )
                return ContainerOperationResult(success=False, error=error)

            container_name = name_override or self.generate_container_name(task_id)
            command = self.build_create_command(runtime, config, container_name, image, task_id)
            logger.info(f"Creating container {container_name} from {image}")
            result = await self.runner.run(command, timeout=self.command_timeout)

            error = self._command_failure(result, "Container creation failed")
            if error:
                await self.events.publish(
                    ContainerCreated(container_id="", success=False, task_id=task_id, error=error)
                )
                return ContainerOperationResult(
                    success=False,
                    error=error,
                    command=result.command_text,
                    output=result.stdout,
                )

            container_id = result.stdout.strip().splitlines()[-1].strip()
            info = await self.inspect_container(container_id)
            await self.events.publish(
                ContainerCreated(container_id=container_id, task_id=task_id, container_info=info)
            )

            if auto_start:
                start_result = await self.start_container(container_id)
                if not start_result.success:
                    logger.warning(f"Start failed for {container_name}, removing it")
                    await self.remove_container(container_id, force=True)
                    return start_result
                info = start_result.container_info

            return ContainerOperationResult(
                success=True,
                container_id=container_id,
                container_info=info,
                command=result.command_text,
                output=result.stdout,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error creating container for task {task_id}")
            return ContainerOperationResult(success=False, error=f"Container creation failed: {exc}")

    async def start_container(self, container_id: str) -> ContainerOperationResult:
        """Start an existing container."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return ContainerOperationResult(success=False, error="No container runtime available")

            command = [runtime.value, "start", container_id]
            result = await self.runner.run(command, timeout=self.command_timeout)
            error = self._command_failure(result, "Container start failed")
            if error:
                await self.events.publish(
                    ContainerStarted(container_id=container_id, success=False, error=error)
                )
                return ContainerOperationResult(
                    success=False,
                    container_id=container_id,
                    error=error,
                    command=result.command_text,
                    output=result.stdout,
                )

            info = await self.inspect_container(container_id)
            await self.events.publish(
                ContainerStarted(
                    container_id=container_id,
                    task_id=self.extract_task_id(info.name) if info else None,
                    container_info=info,
                )
            )
            logger.info(f"Started container {container_id}")
            return ContainerOperationResult(
                success=True,
                container_id=container_id,
                container_info=info,
                command=result.command_text,
                output=result.stdout,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error starting container {container_id}")
            return ContainerOperationResult(success=False, container_id=container_id, error=f"Container start failed: {exc}")

    async def stop_container(self, container_id: str, timeout: int = 10) -> ContainerOperationResult:
        """Stop a running container, allowing ``timeout`` seconds to exit cleanly."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return ContainerOperationResult(success=False, error="No container runtime available")

            command = [runtime.value, "stop", "--time", str(timeout), container_id]
            result = await self.runner.run(command, timeout=timeout + self.command_timeout)
            error = self._command_failure(result, "Container stop failed")
            if error:
                await self.events.publish(
                    ContainerStopped(container_id=container_id, success=False, error=error)
                )
                return ContainerOperationResult(
                    success=False,
                    container_id=container_id,
                    error=error,
                    command=result.command_text,
                    output=result.stdout,
                )

            await self.events.publish(ContainerStopped(container_id=container_id))
            logger.info(f"Stopped container {container_id}")
            return ContainerOperationResult(
                success=True,
                container_id=container_id,
                command=result.command_text,
                output=result.stdout,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error stopping container {container_id}")
            return ContainerOperationResult(success=False, container_id=container_id, error=f"Container stop failed: {exc}")

    async def remove_container(self, container_id: str, force: bool = False) -> ContainerOperationResult:
        """Remove a container; ``force`` removes it even while running."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return ContainerOperationResult(success=False, error="No container runtime available")

            command = [runtime.value, "rm"]
            if force:
                command.append("--force")
            command.append(container_id)
            result = await self.runner.run(command, timeout=self.command_timeout)
            error = self._command_failure(result, "Container removal failed")
            if error:
                await self.events.publish(
                    ContainerRemoved(container_id=container_id, success=False, error=error)
                )
                return ContainerOperationResult(
                    success=False,
                    container_id=container_id,
                    error=error,
                    command=result.command_text,
                    output=result.stdout,
                )

            await self.events.publish(ContainerRemoved(container_id=container_id))
            logger.info(f"Removed container {container_id}")
            return ContainerOperationResult(
                success=True,
                container_id=container_id,
                command=result.command_text,
                output=result.stdout,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error removing container {container_id}")
            return ContainerOperationResult(success=False, container_id=container_id, error=f"Container removal failed: {exc}")

    # =========================================================================
    # Queries
    # =========================================================================

    async def inspect_container(self, container_id: str) -> Optional[ContainerRecord]:
        """Fresh view of a container, or None if it does not exist."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return None

            result = await self.runner.run(
                [runtime.value, "inspect", "--format", INSPECT_FORMAT, container_id],
                timeout=self.inspect_timeout,
            )
            if not result.succeeded():
                return None
            return parse_inspect_output(result.stdout, container_id)
        except Exception:
            logger.exception(f"Unexpected error inspecting container {container_id}")
            return None

    async def get_stats(self, container_id: str) -> Optional[ContainerStats]:
        """One resource snapshot, or None if stats are unavailable."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return None

            result = await self.runner.run(
                [runtime.value, "stats", "--no-stream", "--format", STATS_FORMAT, container_id],
                timeout=self.inspect_timeout,
            )
            if not result.succeeded():
                return None
            for line in result.stdout.splitlines():
                if line.strip():
                    return parse_stats_line(line)
            return None
        except Exception:
            logger.exception(f"Unexpected error reading stats of container {container_id}")
            return None

    async def list_containers(self, include_exited: bool = False) -> list[ContainerRecord]:
        """List workspace-owned containers (name starts with the prefix)."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return []

            command = [runtime.value, "ps"]
            if include_exited:
                command.append("--all")
            else:
                command.extend(["--filter", "status=running"])
            command.extend(["--filter", f"name={self.name_prefix}", "--format", PS_FORMAT])

            result = await self.runner.run(command, timeout=self.inspect_timeout)
            if not result.succeeded():
                return []

            ids = []
            for line in result.stdout.splitlines():
                parts = line.strip().split("|")
                # The name filter is a substring match; enforce the prefix here.
                if len(parts) >= 4 and self.is_workspace_container(parts[1]):
                    ids.append(parts[0])

            records = await asyncio.gather(*(self.inspect_container(cid) for cid in ids))
            return [record for record in records if record is not None]
        except Exception:
            logger.exception("Unexpected error listing containers")
            return []

    # =========================================================================
    # Exec, logs and events
    # =========================================================================

    async def exec_command(
        self,
        container_id: str,
        command: Union[str, Sequence[str]],
        *,
        working_dir: Optional[str] = None,
        user: Optional[str] = None,
        timeout_ms: int = 30000,
        environment: Optional[dict[str, str]] = None,
        tty: bool = False,
        interactive: bool = False,
        privileged: bool = False,
    ) -> ExecResult:
        """Run a one-shot command inside a running container."""
        try:
            runtime = await self.get_runtime()
            if runtime == RuntimeKind.NONE:
                return ExecResult(
                    success=False,
                    stdout="",
                    stderr="",
                    exit_code=1,
                    error="No container runtime available",
                )

            argv = [runtime.value, "exec"]
            if working_dir:
                argv.extend(["--workdir", working_dir])
            if user:
                argv.extend(["--user", user])
            for key, value in (environment or {}).items():
                argv.extend(["--env", f"{key}={value}"])
            if tty:
                argv.append("--tty")
            if interactive:
                argv.append("--interactive")
            if privileged:
                argv.append("--privileged")
            argv.append(container_id)

            if isinstance(command, str):
                try:
                    argv.extend(shlex.split(command))
                except ValueError as exc:
                    return ExecResult(
                        success=False,
                        stdout="",
                        stderr="",
                        exit_code=1,
                        command=quote_command(argv),
                        error=f"Could not parse command: {exc}",
                    )
            else:
                argv.extend(command)

            result = await self.runner.run(argv, timeout=timeout_ms / 1000)
            command_text = result.command_text

            if result.timed_out:
                return ExecResult(
                    success=False,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=EXEC_TIMEOUT_EXIT_CODE,
                    command=command_text,
                    error=f"Command timed out after {timeout_ms}ms",
                )
            if not result.tool_available:
                return ExecResult(
                    success=False,
                    stdout="",
                    stderr=result.stderr,
                    exit_code=1,
                    command=command_text,
                    error=result.stderr,
                )
            if result.return_code != 0:
                exit_code = result.return_code if isinstance(result.return_code, int) and result.return_code > 0 else 1
                return ExecResult(
                    success=False,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=exit_code,
                    command=command_text,
                    error=f"Command failed with exit code {exit_code}: {result.stderr.strip()}".rstrip(": "),
                )

            return ExecResult(
                success=True,
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=0,
                command=command_text,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error executing command in container {container_id}")
            return ExecResult(
                success=False,
                stdout="",
                stderr="",
                exit_code=1,
                error=f"Command execution failed: {exc}",
            )

    def stream_logs(
        self,
        container_id: str,
        *,
        follow: bool = False,
        tail: Optional[Union[int, str]] = None,
        timestamps: bool = False,
        since: Optional[Union[str, datetime, timedelta]] = None,
        until: Optional[Union[str, datetime, timedelta]] = None,
        stream: str = "both",
    ) -> ContainerLogStream:
        """Create a log stream for a container; use it with ``async with``."""
        return ContainerLogStream(
            container_id,
            runtime_resolver=self.get_runtime,
            runner=self.runner,
            follow=follow,
            tail=tail,
            timestamps=timestamps,
            since=format_log_time(since) if since is not None else None,
            until=format_log_time(until) if until is not None else None,
            stream=stream,
        )

    def events_monitor(self, **options) -> EventsMonitor:
        """Create an events monitor that publishes into this manager's bus."""
        return EventsMonitor(self, **options)


# Singleton instance
_container_manager: Optional[ContainerManager] = None


def get_container_manager() -> ContainerManager:
    """Get the singleton container manager instance."""
    global _container_manager
    if _container_manager is None:
        _container_manager = ContainerManager()
    return _container_manager


async def create_task_container(
    config: ContainerConfig,
    task_id: str,
    auto_start: bool = True,
) -> ContainerOperationResult:
    return await get_container_manager().create_container(config, task_id, auto_start=auto_start)


def generate_task_container_name(task_id: str) -> str:
    return get_container_manager().generate_container_name(task_id)
