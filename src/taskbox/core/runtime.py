"""Container runtime detection.

Probes the host for Docker and Podman. A runtime counts as available only
when its binary answers `--version` *and* `info` succeeds, which proves the
daemon (or podman's service) is actually reachable.
"""

import logging
import re
import time
from typing import Optional, Union

from taskbox.config import settings
from taskbox.core.models import (
    CompatibilityReport,
    CompatibilityRequirement,
    RuntimeDescriptor,
    RuntimeKind,
    RuntimeVersionInfo,
)
from taskbox.core.process import CommandRunner, CommandResult

logger = logging.getLogger(__name__)

PROBE_ORDER = (RuntimeKind.DOCKER, RuntimeKind.PODMAN)

VERSION_PATTERNS: dict[RuntimeKind, re.Pattern[str]] = {
    RuntimeKind.DOCKER: re.compile(r"docker version (\d+\.\d+\.\d+)", re.IGNORECASE),
    RuntimeKind.PODMAN: re.compile(r"podman version (\d+\.\d+\.\d+)", re.IGNORECASE),
}
GENERIC_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
BUILD_PATTERN = re.compile(r"build ([0-9a-f]+)", re.IGNORECASE)


def parse_version_output(kind: RuntimeKind, output: str) -> RuntimeVersionInfo:
    """Extract a version from `--version` output, or 'unknown'."""
    text = output.strip()
    version = "unknown"

    pattern = VERSION_PATTERNS.get(kind)
    match = pattern.search(text) if pattern else None
    if match is None:
        match = GENERIC_VERSION_PATTERN.search(text)
    if match:
        version = match.group(1)

    build = BUILD_PATTERN.search(text) if kind == RuntimeKind.DOCKER else None
    return RuntimeVersionInfo(
        version=version,
        full_version=text,
        build_info=build.group(1) if build else None,
    )


def compare_versions(left: str, right: str) -> int:
    """Compare dotted versions segment by segment; missing segments are 0."""
    a = [int(part) if part.isdigit() else 0 for part in left.split(".")]
    b = [int(part) if part.isdigit() else 0 for part in right.split(".")]
    width = max(len(a), len(b))
    a += [0] * (width - len(a))
    b += [0] * (width - len(b))
    return (a > b) - (a < b)


class RuntimeDetector:
    """Detects and caches which container runtimes are usable."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        cache_ttl: Optional[float] = None,
        probe_timeout: float = 10.0,
    ):
        self.runner = runner or CommandRunner()
        self.cache_ttl = settings.runtime_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self.probe_timeout = probe_timeout
        self._cache: dict[RuntimeKind, tuple[float, RuntimeDescriptor]] = {}

    def clear_cache(self) -> None:
        """Forget every cached probe so the next call re-detects."""
        self._cache.clear()

    async def detect(self) -> list[RuntimeDescriptor]:
        """Probe docker and podman, reusing results younger than the TTL."""
        return [await self.probe(kind) for kind in PROBE_ORDER]

    async def probe(self, kind: Union[RuntimeKind, str]) -> RuntimeDescriptor:
        kind = RuntimeKind(kind)
        cached = self._cache.get(kind)
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            return cached[1]

        descriptor = await self._probe_uncached(kind)
        self._cache[kind] = (time.monotonic(), descriptor)
        return descriptor

    async def _probe_uncached(self, kind: RuntimeKind) -> RuntimeDescriptor:
        version_result = await self.runner.run([kind.value, "--version"], timeout=self.probe_timeout)
        command = version_result.command_text

        failure = self._probe_failure(version_result)
        if failure:
            logger.debug(f"{kind.value} not usable: {failure}")
            return RuntimeDescriptor(kind=kind, available=False, error=failure, command=command)

        version_info = parse_version_output(kind, version_result.stdout)

        info_result = await self.runner.run([kind.value, "info"], timeout=self.probe_timeout)
        if not info_result.succeeded():
            error = self._probe_failure(info_result) or "info command failed"
            logger.debug(f"{kind.value} binary present but not functional: {error}")
            return RuntimeDescriptor(
                kind=kind,
                available=False,
                version_info=version_info,
                error=f"{kind.value} is installed but not functional: {error}",
                command=command,
            )

        return RuntimeDescriptor(kind=kind, available=True, version_info=version_info, command=command)

    @staticmethod
    def _probe_failure(result: CommandResult) -> Optional[str]:
        if result.timed_out:
            return f"timeout after {result.duration:.1f}s"
        if not result.tool_available:
            return result.stderr or "not found"
        if result.return_code != 0:
            return result.stderr.strip() or result.stdout.strip() or f"exit code {result.return_code}"
        if result.stderr.strip():
            return result.stderr.strip()
        return None

    async def best_runtime(self, preferred: Optional[Union[RuntimeKind, str]] = None) -> RuntimeKind:
        """Pick the preferred runtime if usable, else docker, else podman."""
        available = {d.kind for d in await self.detect() if d.available}

        if preferred:
            try:
                kind = RuntimeKind(preferred)
            except ValueError:
                logger.warning(f"Ignoring unknown preferred runtime {preferred!r}")
            else:
                if kind in available:
                    return kind
        for kind in PROBE_ORDER:
            if kind in available:
                return kind
        return RuntimeKind.NONE

    async def is_available(self, kind: Union[RuntimeKind, str]) -> bool:
        if RuntimeKind(kind) == RuntimeKind.NONE:
            return False
        return (await self.probe(kind)).available

    async def get_version(self, kind: Union[RuntimeKind, str]) -> Optional[RuntimeVersionInfo]:
        if RuntimeKind(kind) == RuntimeKind.NONE:
            return None
        descriptor = await self.probe(kind)
        return descriptor.version_info if descriptor.available else None

    async def validate_compatibility(
        self,
        kind: Union[RuntimeKind, str],
        requirements: Optional[CompatibilityRequirement] = None,
    ) -> CompatibilityReport:
        """Check a runtime against version requirements.

        Incompatibility is reported through the returned issues and
        recommendations, never raised.
        """
        kind = RuntimeKind(kind)
        requirements = requirements or CompatibilityRequirement()

        if kind == RuntimeKind.NONE:
            return CompatibilityReport(
                compatible=False,
                version_compatible=False,
                features_compatible=False,
                issues=["No container runtime specified"],
                recommendations=["Install Docker or Podman to enable container functionality"],
            )

        descriptor = await self.probe(kind)
        if not descriptor.available:
            return CompatibilityReport(
                compatible=False,
                version_compatible=False,
                features_compatible=False,
                issues=[f"{kind.value} is not available or not functional"],
                recommendations=[f"Install or fix {kind.value} installation"],
                runtime_info=descriptor,
            )

        issues: list[str] = []
        recommendations: list[str] = []
        version = descriptor.version or "unknown"
        version_compatible = True

        if version != "unknown":
            if requirements.min_version and compare_versions(version, requirements.min_version) < 0:
                version_compatible = False
                issues.append(
                    f"{kind.value} version {version} is below minimum required {requirements.min_version}"
                )
                recommendations.append(f"Upgrade {kind.value} to version {requirements.min_version} or higher")
            if requirements.max_version and compare_versions(version, requirements.max_version) > 0:
                version_compatible = False
                issues.append(
                    f"{kind.value} version {version} is above maximum supported {requirements.max_version}"
                )
                recommendations.append(f"Downgrade {kind.value} to version {requirements.max_version} or lower")
        elif requirements.min_version or requirements.max_version:
            recommendations.append(f"Could not determine {kind.value} version; version constraints not checked")

        # No feature probing yet; requested features are assumed present.
        features_compatible = True

        compatible = version_compatible and features_compatible
        if compatible:
            recommendations.append(f"{kind.value} is compatible and ready to use")

        return CompatibilityReport(
            compatible=compatible,
            version_compatible=version_compatible,
            features_compatible=features_compatible,
            issues=issues,
            recommendations=recommendations,
            runtime_info=descriptor,
        )


# Singleton instance
_runtime_detector: Optional[RuntimeDetector] = None


def get_runtime_detector() -> RuntimeDetector:
    """Get the singleton runtime detector instance."""
    global _runtime_detector
    if _runtime_detector is None:
        _runtime_detector = RuntimeDetector()
    return _runtime_detector


async def detect_container_runtime(preferred: Optional[Union[RuntimeKind, str]] = None) -> RuntimeKind:
    return await get_runtime_detector().best_runtime(preferred)


async def is_container_runtime_available(kind: Union[RuntimeKind, str]) -> bool:
    return await get_runtime_detector().is_available(kind)


async def get_runtime_version(kind: Union[RuntimeKind, str]) -> Optional[RuntimeVersionInfo]:
    return await get_runtime_detector().get_version(kind)
