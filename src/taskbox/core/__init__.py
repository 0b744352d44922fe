"""Core modules for Taskbox.

Contains the container runtime building blocks:
- runtime: Docker/Podman detection and compatibility checks
- image_builder: Dockerfile builds with a persisted image cache
- container_manager: Container lifecycle, exec, stats and listing
- log_stream: Streaming container logs
- events / events_monitor: Lifecycle notifications and the runtime event stream
- health_monitor: Per-container health state machine
"""

from taskbox.core.models import (
    ContainerConfig,
    ContainerOperationResult,
    ContainerRecord,
    ContainerStats,
    ContainerStatus,
    ExecResult,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    ImageBuildConfig,
    ImageBuildResult,
    ImageInfo,
    LogEntry,
    ResourceLimits,
    RuntimeKind,
    TaskboxError,
    RuntimeUnavailableError,
    ImageCacheError,
    LogStreamError,
)
from taskbox.core.runtime import (
    RuntimeDetector,
    get_runtime_detector,
    detect_container_runtime,
)
from taskbox.core.image_builder import (
    ImageBuilder,
    create_image_builder,
)
from taskbox.core.events import (
    EventBus,
    ContainerCreated,
    ContainerStarted,
    ContainerStopped,
    ContainerRemoved,
    ContainerDied,
    ContainerHealthChanged,
)
from taskbox.core.container_manager import (
    ContainerManager,
    get_container_manager,
    create_task_container,
    generate_task_container_name,
)
from taskbox.core.log_stream import ContainerLogStream
from taskbox.core.events_monitor import EventsMonitor
from taskbox.core.health_monitor import HealthMonitor

__all__ = [
    # Models
    "ContainerConfig",
    "ContainerOperationResult",
    "ContainerRecord",
    "ContainerStats",
    "ContainerStatus",
    "ExecResult",
    "HealthRecord",
    "HealthStatus",
    "HealthSummary",
    "ImageBuildConfig",
    "ImageBuildResult",
    "ImageInfo",
    "LogEntry",
    "ResourceLimits",
    "RuntimeKind",
    # Errors
    "TaskboxError",
    "RuntimeUnavailableError",
    "ImageCacheError",
    "LogStreamError",
    # Runtime detection
    "RuntimeDetector",
    "get_runtime_detector",
    "detect_container_runtime",
    # Image builds
    "ImageBuilder",
    "create_image_builder",
    # Notifications
    "EventBus",
    "ContainerCreated",
    "ContainerStarted",
    "ContainerStopped",
    "ContainerRemoved",
    "ContainerDied",
    "ContainerHealthChanged",
    # Container management
    "ContainerManager",
    "get_container_manager",
    "create_task_container",
    "generate_task_container_name",
    "ContainerLogStream",
    "EventsMonitor",
    "HealthMonitor",
]
