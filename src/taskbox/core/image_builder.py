"""Image building with a persisted, content-addressed build cache.

A build is skipped only when the cached entry's Dockerfile digest matches
the current Dockerfile *and* the runtime still has an image with the cached
ID under that tag. Image inspection, listing and removal go through
python-on-whales; the build itself is a plain CLI invocation so its output
can be captured verbatim.
"""

import asyncio
import hashlib
import heapq
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from pydantic import ValidationError
from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException, NoSuchImage

from taskbox.config import settings
from taskbox.core.models import (
    IMAGE_CACHE_VERSION,
    ImageBuildConfig,
    ImageBuildResult,
    ImageCache,
    ImageCacheEntry,
    ImageCacheError,
    ImageInfo,
    RuntimeKind,
    RuntimeUnavailableError,
)
from taskbox.core.process import CommandRunner
from taskbox.core.runtime import RuntimeDetector, get_runtime_detector

logger = logging.getLogger(__name__)

CACHE_FILENAME = "image-cache.json"

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]
SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)$", re.IGNORECASE)


def format_size(size: int) -> str:
    """Render a byte count with binary multiples, e.g. 1.5KB."""
    if size < 1024:
        return f"{size}B"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f}{SIZE_UNITS[unit]}"


def parse_size(text: str) -> Optional[int]:
    """Parse '1.5MB'-style sizes (binary multiples); None if unparseable."""
    match = SIZE_PATTERN.match(text.strip()) if text else None
    if not match:
        return None
    exponent = SIZE_UNITS.index(match.group(2).upper())
    return int(float(match.group(1)) * 1024**exponent)


def short_image_id(image_id: str) -> str:
    return image_id.removeprefix("sha256:")[:12]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_client_factory(kind: str) -> DockerClient:
    return DockerClient(client_call=[kind])


class ImageBuilder:
    """Builds workspace images and remembers what it built."""

    def __init__(
        self,
        project_root: Union[str, Path] = ".",
        detector: Optional[RuntimeDetector] = None,
        runner: Optional[CommandRunner] = None,
        client_factory: Callable[[str], DockerClient] = default_client_factory,
        cache_path: Optional[Path] = None,
        tag_prefix: Optional[str] = None,
        build_timeout: Optional[float] = None,
        inspect_timeout: Optional[float] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.detector = detector or get_runtime_detector()
        self.runner = runner or CommandRunner()
        self.client_factory = client_factory
        self.cache_path = cache_path or self.project_root / settings.image_cache_dir / CACHE_FILENAME
        self.tag_prefix = tag_prefix or settings.container_prefix
        self.build_timeout = build_timeout or settings.build_timeout_seconds
        self.inspect_timeout = inspect_timeout or settings.inspect_timeout_seconds

        self.runtime: Optional[RuntimeKind] = None
        self._clients: dict[RuntimeKind, DockerClient] = {}
        self._build_locks: dict[str, asyncio.Lock] = {}

    async def initialize(self, preferred: Optional[Union[RuntimeKind, str]] = None) -> RuntimeKind:
        """Select the runtime used for builds.

        Raises:
            RuntimeUnavailableError: neither Docker nor Podman is usable.
        """
        runtime = await self.detector.best_runtime(preferred)
        if runtime == RuntimeKind.NONE:
            raise RuntimeUnavailableError("No container runtime (Docker or Podman) available")
        self.runtime = runtime
        return runtime

    async def _ensure_runtime(self) -> RuntimeKind:
        if self.runtime is None:
            await self.initialize(settings.preferred_runtime)
        return self.runtime

    def _client(self, runtime: RuntimeKind) -> DockerClient:
        if runtime not in self._clients:
            self._clients[runtime] = self.client_factory(runtime.value)
        return self._clients[runtime]

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.project_root / candidate

    # =========================================================================
    # Tags and digests
    # =========================================================================

    def generate_project_tag(self, dockerfile_path: str) -> str:
        """Deterministic tag for this project root and Dockerfile."""
        digest = hashlib.sha256(f"{self.project_root}:{dockerfile_path}".encode()).hexdigest()
        return f"{self.tag_prefix}-project-{digest[:8]}:latest"

    @staticmethod
    def calculate_dockerfile_hash(dockerfile: Path) -> str:
        return hashlib.sha256(dockerfile.read_bytes()).hexdigest()

    # =========================================================================
    # Build
    # =========================================================================

    async def build_image(self, config: ImageBuildConfig) -> ImageBuildResult:
        """Build the image described by ``config``, or reuse a cached build."""
        start = time.monotonic()

        try:
            runtime = await self._ensure_runtime()
        except RuntimeUnavailableError as exc:
            return ImageBuildResult(success=False, error=str(exc))

        dockerfile = self._resolve(config.dockerfile_path)
        context = self._resolve(config.build_context) if config.build_context else dockerfile.parent

        if not dockerfile.is_file():
            return ImageBuildResult(success=False, error=f"Dockerfile not found: {dockerfile}")
        if not context.is_dir():
            return ImageBuildResult(success=False, error=f"Build context not found: {context}")

        try:
            dockerfile_hash = self.calculate_dockerfile_hash(dockerfile)
        except OSError as exc:
            return ImageBuildResult(success=False, error=f"Failed to read Dockerfile: {exc}")

        tag = config.image_tag or self.generate_project_tag(config.dockerfile_path)

        lock = self._build_locks.setdefault(tag, asyncio.Lock())
        async with lock:
            result = await self._build_locked(
                runtime, config, dockerfile, context, dockerfile_hash, tag
            )
        result.build_duration_ms = int((time.monotonic() - start) * 1000)
        return result

    async def _build_locked(
        self,
        runtime: RuntimeKind,
        config: ImageBuildConfig,
        dockerfile: Path,
        context: Path,
        dockerfile_hash: str,
        tag: str,
    ) -> ImageBuildResult:
        try:
            cached = self.load_image_cache().images.get(tag)
        except ImageCacheError as exc:
            logger.warning(f"Ignoring unreadable image cache, rebuilding {tag}: {exc}")
            cached = None

        current = await self.get_image_info(tag)

        if cached and not config.force_rebuild:
            if (
                cached.dockerfile_hash == dockerfile_hash
                and current.exists
                and cached.image_id == current.id
            ):
                logger.info(f"Reusing cached image {tag}")
                try:
                    await self.get_cached_metadata(tag)
                except ImageCacheError as exc:
                    logger.warning(f"Could not refresh image cache entry for {tag}: {exc}")
                current.dockerfile_hash = dockerfile_hash
                return ImageBuildResult(
                    success=True,
                    rebuilt=False,
                    image_info=current,
                    build_output="Using cached image (no Dockerfile changes detected)",
                )

        if cached:
            logger.info(f"Evicting stale cache entry for {tag}")
            try:
                self.remove_cached_metadata(tag)
            except ImageCacheError as exc:
                logger.warning(f"Could not evict cache entry for {tag}: {exc}")

        if config.force_rebuild:
            summary = "Forced rebuild successful"
        elif cached is None:
            summary = "First build successful"
        elif cached.dockerfile_hash != dockerfile_hash:
            summary = "Build successful"
        else:
            summary = "Rebuilt after cache invalidation"

        command = self.build_build_command(runtime, dockerfile, context, tag, config)
        logger.info(f"Building image {tag} with {runtime.value}")
        started = time.monotonic()
        result = await self.runner.run(command, timeout=self.build_timeout)
        build_duration_ms = int((time.monotonic() - started) * 1000)
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)

        if result.timed_out:
            return ImageBuildResult(
                success=False,
                error=f"Image build timed out after {self.build_timeout:.0f}s",
                build_output=output,
            )
        if not result.succeeded():
            detail = result.stderr.strip() or result.stdout.strip() or "unknown error"
            logger.error(f"Image build failed for {tag}: {detail}")
            return ImageBuildResult(
                success=False,
                error=f"Image build failed: {detail}",
                build_output=output,
            )

        info = await self.get_image_info(tag)
        if not info.exists:
            return ImageBuildResult(
                success=False,
                error=f"Build finished but image {tag} is not present",
                build_output=output,
            )
        info.dockerfile_hash = dockerfile_hash

        now = _now()
        entry = ImageCacheEntry(
            image_tag=tag,
            dockerfile_hash=dockerfile_hash,
            dockerfile_path=str(dockerfile),
            image_id=info.id,
            image_size=info.size,
            build_duration_ms=build_duration_ms,
            build_timestamp=now,
            build_context=str(context),
            last_accessed=now,
        )
        try:
            self.store_cached_metadata(entry)
        except ImageCacheError as exc:
            logger.warning(f"Built {tag} but could not record it in the cache: {exc}")

        return ImageBuildResult(
            success=True,
            rebuilt=True,
            image_info=info,
            build_output=f"{summary}\n{output}" if output else summary,
        )

    @staticmethod
    def build_build_command(
        runtime: RuntimeKind,
        dockerfile: Path,
        context: Path,
        tag: str,
        config: ImageBuildConfig,
    ) -> list[str]:
        command = [runtime.value, "build", "-f", str(dockerfile), "-t", tag]
        for key, value in config.build_args.items():
            command.extend(["--build-arg", f"{key}={value}"])
        if config.target:
            command.extend(["--target", config.target])
        if config.platform:
            command.extend(["--platform", config.platform])
        if config.no_cache:
            command.append("--no-cache")
        command.append(str(context))
        return command

    # =========================================================================
    # Image queries
    # =========================================================================

    async def get_image_info(self, tag: str) -> ImageInfo:
        """Inspect an image by tag; a missing image yields exists=False."""
        runtime = await self._ensure_runtime()
        client = self._client(runtime)
        try:
            image = await asyncio.wait_for(
                asyncio.to_thread(client.image.inspect, tag),
                timeout=self.inspect_timeout,
            )
        except NoSuchImage:
            return ImageInfo(tag=tag, id="", created=_now(), exists=False)
        except (DockerException, ValueError, asyncio.TimeoutError) as exc:
            logger.debug(f"Image inspect failed for {tag}: {exc}")
            return ImageInfo(tag=tag, id="", created=_now(), exists=False)

        if not image.id:
            return ImageInfo(tag=tag, id="", created=_now(), exists=False)

        size = image.size
        return ImageInfo(
            tag=tag,
            id=short_image_id(image.id),
            created=image.created or _now(),
            exists=True,
            size=size,
            size_formatted=format_size(size) if size is not None else None,
        )

    async def image_exists(self, tag: str) -> bool:
        return (await self.get_image_info(tag)).exists

    async def remove_image(self, tag: str, force: bool = False) -> bool:
        """Remove an image and forget its cache entry."""
        runtime = await self._ensure_runtime()
        client = self._client(runtime)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(client.image.remove, tag, force=force),
                timeout=self.inspect_timeout,
            )
        except (DockerException, asyncio.TimeoutError) as exc:
            logger.warning(f"Failed to remove image {tag}: {exc}")
            return False

        try:
            self.remove_cached_metadata(tag)
        except ImageCacheError as exc:
            logger.warning(f"Removed {tag} but could not update the cache: {exc}")
        return True

    async def list_project_images(self) -> list[ImageInfo]:
        """List images whose tags follow the project tag convention."""
        runtime = await self._ensure_runtime()
        client = self._client(runtime)
        try:
            images = await asyncio.wait_for(
                asyncio.to_thread(client.image.list),
                timeout=self.inspect_timeout,
            )
        except (DockerException, ValueError, asyncio.TimeoutError) as exc:
            logger.warning(f"Failed to list images: {exc}")
            return []

        prefix = f"{self.tag_prefix}-project-"
        found = []
        for image in images:
            for tag in image.repo_tags or []:
                if tag.startswith(prefix):
                    found.append(
                        ImageInfo(
                            tag=tag,
                            id=short_image_id(image.id),
                            created=image.created or _now(),
                            exists=True,
                            size=image.size,
                            size_formatted=format_size(image.size) if image.size is not None else None,
                        )
                    )
        return found

    async def cleanup_old_images(self, keep_count: int = 5) -> int:
        """Remove all but the newest ``keep_count`` project images."""
        images = await self.list_project_images()
        images.sort(key=lambda info: info.created, reverse=True)

        removed = 0
        for info in images[keep_count:]:
            if await self.remove_image(info.tag):
                removed += 1
        return removed

    # =========================================================================
    # Cache persistence
    # =========================================================================

    def load_image_cache(self) -> ImageCache:
        """Read the cache document; a missing file is an empty cache.

        Raises:
            ImageCacheError: the file exists but is unreadable or malformed.
        """
        if not self.cache_path.exists():
            return ImageCache()
        try:
            cache = ImageCache.model_validate_json(self.cache_path.read_text())
        except (OSError, ValidationError) as exc:
            raise ImageCacheError(f"Failed to load image cache {self.cache_path}: {exc}") from exc

        if cache.version != IMAGE_CACHE_VERSION:
            logger.warning(
                f"Image cache version {cache.version} differs from {IMAGE_CACHE_VERSION}; using it anyway"
            )
        return cache

    def save_image_cache(self, cache: ImageCache) -> None:
        """Write the cache document atomically, creating its directory."""
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cache_path.with_suffix(".tmp")
            tmp_path.write_text(cache.model_dump_json(indent=2))
            tmp_path.replace(self.cache_path)
        except OSError as exc:
            raise ImageCacheError(f"Failed to save image cache {self.cache_path}: {exc}") from exc

    async def get_cached_metadata(self, tag: str) -> Optional[ImageCacheEntry]:
        """Return a cache entry and mark it as recently used."""
        cache = self.load_image_cache()
        entry = cache.images.get(tag)
        if entry is None:
            return None
        entry.last_accessed = _now()
        self.save_image_cache(cache)
        return entry

    def store_cached_metadata(self, entry: ImageCacheEntry) -> None:
        cache = self.load_image_cache()
        cache.images[entry.image_tag] = entry
        self.save_image_cache(cache)

    def remove_cached_metadata(self, tag: str) -> bool:
        cache = self.load_image_cache()
        if cache.images.pop(tag, None) is None:
            return False
        self.save_image_cache(cache)
        return True

    def cleanup_image_cache(self, max_entries: Optional[int] = None) -> int:
        """Evict least recently used entries beyond ``max_entries``."""
        limit = settings.image_cache_max_entries if max_entries is None else max_entries
        cache = self.load_image_cache()
        if len(cache.images) <= limit:
            return 0

        keep = heapq.nlargest(limit, cache.images.values(), key=lambda e: e.last_accessed)
        removed = len(cache.images) - len(keep)
        cache.images = {entry.image_tag: entry for entry in keep}
        self.save_image_cache(cache)
        logger.info(f"Evicted {removed} image cache entries")
        return removed


def create_image_builder(project_root: Union[str, Path] = ".", **kwargs) -> ImageBuilder:
    return ImageBuilder(project_root, **kwargs)
