"""Configuration management for taskbox."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TASKBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Container naming
    container_prefix: str = Field(
        default="taskbox",
        description="Prefix for every workspace container name",
    )
    name_separator: str = Field(
        default="-",
        description="Separator between container name components",
    )
    include_timestamp: bool = Field(
        default=False,
        description="Append a base36 timestamp to container names",
    )

    # Runtime selection
    preferred_runtime: Optional[str] = Field(
        default=None,
        description="Preferred container runtime (docker or podman)",
    )
    runtime_cache_ttl_seconds: float = Field(
        default=300.0,
        description="How long runtime detection results stay cached",
    )

    # Timeouts
    command_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for create/start/rm invocations",
    )
    inspect_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for inspect/ps/stats invocations",
    )
    build_timeout_seconds: float = Field(
        default=600.0,
        description="Timeout for image builds (10 minutes)",
    )
    process_grace_seconds: float = Field(
        default=5.0,
        description="Grace period between SIGTERM and SIGKILL for streams",
    )

    # Image cache
    image_cache_dir: Path = Field(
        default=Path(".taskbox"),
        description="Project-relative directory holding image-cache.json",
    )
    image_cache_max_entries: int = Field(
        default=100,
        description="LRU ceiling for the persisted image cache",
    )

    # Health monitoring
    health_interval_seconds: float = Field(
        default=30.0,
        description="Interval between health polls",
    )
    health_max_failures: int = Field(
        default=3,
        description="Failing streak that marks a container unhealthy",
    )
    health_check_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single container health check",
    )
    health_memory_threshold_percent: float = Field(
        default=95.0,
        description="Memory usage above this percentage is unhealthy",
    )
    health_max_pids: int = Field(
        default=10000,
        description="PID count above this ceiling is unhealthy",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
