"""Data model for the taskbox container core.

Caller-submitted requests (container and build configuration) are pydantic
models so malformed shapes fail at construction. Everything the core hands
back is a plain dataclass: results, records and projections of runtime
state that are recomputed on demand and never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Exceptions
# =============================================================================


class TaskboxError(Exception):
    """Base class for taskbox errors."""


class RuntimeUnavailableError(TaskboxError):
    """No usable container runtime (Docker or Podman) on this host."""

    def __init__(self, message: str = "No container runtime available. Please install Docker or Podman."):
        super().__init__(message)


class ImageCacheError(TaskboxError):
    """The persisted image cache could not be read or written."""


class LogStreamError(TaskboxError):
    """A log stream's underlying process ended abnormally."""


# =============================================================================
# Runtime detection
# =============================================================================


class RuntimeKind(str, Enum):
    """Supported container runtimes."""

    DOCKER = "docker"
    PODMAN = "podman"
    NONE = "none"


@dataclass(frozen=True)
class RuntimeVersionInfo:
    """Parsed output of `<runtime> --version`."""

    version: str
    full_version: str
    build_info: Optional[str] = None


@dataclass(frozen=True)
class RuntimeDescriptor:
    """Result of probing one runtime."""

    kind: RuntimeKind
    available: bool
    version_info: Optional[RuntimeVersionInfo] = None
    error: Optional[str] = None
    command: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        return self.version_info.version if self.version_info else None


@dataclass
class CompatibilityRequirement:
    """Version constraints a caller places on a runtime."""

    min_version: Optional[str] = None
    max_version: Optional[str] = None
    required_features: list[str] = field(default_factory=list)


@dataclass
class CompatibilityReport:
    """Outcome of validating a runtime against requirements."""

    compatible: bool
    version_compatible: bool
    features_compatible: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    runtime_info: Optional[RuntimeDescriptor] = None


# =============================================================================
# Container configuration
# =============================================================================


class ResourceLimits(BaseModel):
    """Resource limits applied at container creation."""

    model_config = ConfigDict(frozen=True)

    memory: Optional[str] = None
    memory_reservation: Optional[str] = None
    memory_swap: Optional[str] = None
    cpu: Optional[float] = Field(default=None, gt=0)
    cpu_shares: Optional[int] = Field(default=None, ge=0)
    cpu_quota: Optional[int] = Field(default=None, ge=0)
    pids_limit: Optional[int] = None


class ContainerConfig(BaseModel):
    """Declarative request for a workspace container.

    Either ``image`` or ``dockerfile`` must be given. When both are present
    the Dockerfile is built and ``image`` is the fallback used if the build
    cannot complete.
    """

    model_config = ConfigDict(frozen=True)

    image: Optional[str] = None
    dockerfile: Optional[str] = None
    build_context: Optional[str] = None
    image_tag: Optional[str] = None
    build_args: dict[str, str] = Field(default_factory=dict)

    volumes: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    resource_limits: Optional[ResourceLimits] = None
    network_mode: Optional[str] = None
    working_dir: Optional[str] = None
    user: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    entrypoint: list[str] = Field(default_factory=list)
    command: list[str] = Field(default_factory=list)
    auto_remove: bool = False
    privileged: bool = False
    security_opts: list[str] = Field(default_factory=list)
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_image_source(self) -> "ContainerConfig":
        if not self.image and not self.dockerfile:
            raise ValueError("ContainerConfig needs an image or a dockerfile")
        return self


# =============================================================================
# Container state projections
# =============================================================================


class ContainerStatus(str, Enum):
    """Container status as reported by the runtime."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"


@dataclass
class ContainerRecord:
    """A container as last reported by `inspect`. Never cached."""

    id: str
    name: str
    image: str
    status: ContainerStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None


@dataclass
class ContainerStats:
    """One snapshot from `stats --no-stream`."""

    cpu_percent: float
    memory_usage: int
    memory_limit: int
    memory_percent: float
    network_rx_bytes: int
    network_tx_bytes: int
    block_read_bytes: int
    block_write_bytes: int
    pids: int


@dataclass
class ContainerOperationResult:
    """Result of a lifecycle operation."""

    success: bool
    container_id: Optional[str] = None
    container_info: Optional[ContainerRecord] = None
    error: Optional[str] = None
    command: Optional[str] = None
    output: Optional[str] = None


@dataclass
class ExecResult:
    """Result of a one-shot command run inside a container."""

    success: bool
    stdout: str
    stderr: str
    exit_code: int
    command: str = ""
    error: Optional[str] = None


@dataclass
class LogEntry:
    """A single line from a container's log stream."""

    timestamp: datetime
    stream: str  # stdout | stderr
    message: str
    raw: str


# =============================================================================
# Health
# =============================================================================


class HealthStatus(str, Enum):
    """Health states tracked per container."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthRecord:
    """Health of one monitored container."""

    container_id: str
    container_name: str
    status: HealthStatus
    failing_streak: int
    last_check_time: datetime
    previous_status: Optional[HealthStatus] = None
    last_check_output: Optional[str] = None
    last_check_exit_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class HealthSummary:
    """Aggregate view over every tracked container."""

    is_monitoring: bool
    total: int
    healthy: int
    unhealthy: int
    starting: int
    average_failing_streak: float
    last_check_time: Optional[datetime] = None


# =============================================================================
# Images
# =============================================================================


class ImageBuildConfig(BaseModel):
    """Request to build (or reuse) an image from a Dockerfile."""

    dockerfile_path: str = "Dockerfile"
    build_context: Optional[str] = None
    image_tag: Optional[str] = None
    build_args: dict[str, str] = Field(default_factory=dict)
    target: Optional[str] = None
    platform: Optional[str] = None
    no_cache: bool = False
    force_rebuild: bool = False


@dataclass
class ImageInfo:
    """Image metadata as reported by the runtime."""

    tag: str
    id: str
    created: datetime
    exists: bool
    size: Optional[int] = None
    size_formatted: Optional[str] = None
    dockerfile_hash: Optional[str] = None


@dataclass
class ImageBuildResult:
    """Outcome of `ImageBuilder.build_image`."""

    success: bool
    rebuilt: bool = False
    image_info: Optional[ImageInfo] = None
    error: Optional[str] = None
    build_output: str = ""
    build_duration_ms: int = 0


class ImageCacheEntry(BaseModel):
    """One remembered build, keyed by tag in the cache document."""

    image_tag: str
    dockerfile_hash: str
    dockerfile_path: str
    image_id: str
    image_size: Optional[int] = None
    build_duration_ms: int = 0
    build_timestamp: datetime
    build_context: str
    last_accessed: datetime


IMAGE_CACHE_VERSION = "1.0"


class ImageCache(BaseModel):
    """The persisted image cache document."""

    version: str = IMAGE_CACHE_VERSION
    images: dict[str, ImageCacheEntry] = Field(default_factory=dict)
