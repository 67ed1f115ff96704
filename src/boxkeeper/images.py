"""Image acquisition for boxkeeper.

The service container always runs the canonical local image
``boxkeeper:latest``. That tag is produced one of four ways:

- pull: GHCR first, Docker Hub as fallback, each retried with backoff
- build: from the embedded Dockerfile, sent as an in-memory build context
- update: keep the current image as ``boxkeeper:previous``, then pull
- rollback: re-tag ``boxkeeper:previous`` as latest (no network)

Every successful acquisition records provenance (see provenance.py).
"""

from __future__ import annotations

import io
import os
import tarfile
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from . import __version__
from .constants import (
    BUILD_LOG_BUFFER,
    ERROR_LOG_BUFFER,
    IMAGE_NAME_DOCKERHUB,
    IMAGE_NAME_GHCR,
    IMAGE_NAME_LOCAL,
    IMAGE_TAG_DEFAULT,
    IMAGE_TAG_PREVIOUS,
    LOG_BUFFER_MAX,
    LOG_BUFFER_MIN,
    VERSION_LABEL,
)
from .dockerfile import generate_dockerfile
from .engine import CLIENT_ERRORS, EngineConnection, translate_engine_error
from .errors import ImageBuildError, ImageError, ImagePullError, NoPreviousImageError
from .logging import get_logger
from .progress import ProgressReporter
from .provenance import ImageProvenance, clear_provenance, load_provenance, save_provenance
from .retry import REGISTRY_PULL, RetryExhausted, RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

BUILD_LOG_BUFFER_ENV = "BOXKEEPER_BUILD_LOG_BUFFER"
ERROR_LOG_BUFFER_ENV = "BOXKEEPER_ERROR_LOG_BUFFER"


class ImageStrategy(str, Enum):
    """How ensure_image should make the image present."""

    PULL = "pull"
    BUILD = "build"
    BUILD_NO_CACHE = "build-no-cache"
    UPDATE = "update"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Registry:
    label: str
    host: str
    repository: str


REGISTRIES: tuple[Registry, ...] = (
    Registry("GHCR", "ghcr.io", IMAGE_NAME_GHCR),
    Registry("Docker Hub", "docker.io", IMAGE_NAME_DOCKERHUB),
)


@dataclass(frozen=True)
class ImageDescriptor:
    """An image as observed on the engine."""

    repository: str
    tag: str
    registry: str | None
    present: bool

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


def local_image_ref(tag: str = IMAGE_TAG_DEFAULT) -> str:
    return f"{IMAGE_NAME_LOCAL}:{tag}"


def image_exists(conn: EngineConnection, tag: str = IMAGE_TAG_DEFAULT) -> bool:
    """Check whether the canonical local image with this tag is present."""
    return conn.inspect_image(local_image_ref(tag)) is not None


def has_previous_image(conn: EngineConnection) -> bool:
    return image_exists(conn, IMAGE_TAG_PREVIOUS)


def get_image_version(conn: EngineConnection, ref: str | None = None) -> str | None:
    """Version label of an image, or None if the image or label is missing."""
    info = conn.inspect_image(ref or local_image_ref())
    if info is None:
        return None
    labels = (info.get("Config") or {}).get("Labels") or {}
    return labels.get(VERSION_LABEL)


def versions_compatible(cli_version: str | None, image_version: str | None) -> bool:
    """Unknown and development versions are always compatible."""
    if cli_version is None or image_version is None:
        return True
    if "dev" in (cli_version, image_version):
        return True
    return cli_version == image_version


def _describe_local(conn: EngineConnection, registry: str | None) -> ImageDescriptor:
    return ImageDescriptor(
        repository=IMAGE_NAME_LOCAL,
        tag=IMAGE_TAG_DEFAULT,
        registry=registry,
        present=image_exists(conn),
    )


# === Build ===


def is_error_line(line: str) -> bool:
    """Heuristic for build output worth repeating in an error report."""
    lower = line.lower()
    return any(
        marker in lower
        for marker in ("error", "failed", "cannot", "unable to", "not found", "permission denied")
    )


def read_log_buffer_size(env_var: str, default: int) -> int:
    """Buffer size from the environment, clamped to a sane range."""
    value = os.environ.get(env_var)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(LOG_BUFFER_MIN, min(LOG_BUFFER_MAX, parsed))


def create_build_context(dockerfile: str | None = None) -> bytes:
    """Gzip-compressed tar holding a single Dockerfile."""
    content = (dockerfile if dockerfile is not None else generate_dockerfile()).encode("utf-8")
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        info = tarfile.TarInfo("Dockerfile")
        info.size = len(content)
        info.mode = 0o644
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def format_build_error(error: str, recent_logs: Iterable[str], error_logs: Iterable[str]) -> str:
    """Engine error text followed by the build output that led to it."""
    recent = list(recent_logs)
    parts = [error]

    recent_set = set(recent)
    unique_errors = [line for line in error_logs if line not in recent_set]
    if unique_errors:
        parts.append("\n\nPotential errors detected during build:")
        parts.extend(f"\n  {line}" for line in unique_errors)

    if recent:
        parts.append("\n\nRecent build output:")
        parts.extend(f"\n  {line}" for line in recent)
    else:
        parts.append("\n\nNo build output was received from the Docker daemon.")
        parts.append("\nThis usually means the build failed before any logs were streamed.")

    lower = error.lower()
    if "network" in lower or "connection" in lower or "timeout" in lower:
        parts.append(
            "\n\nSuggestion: Check your network connection and Docker's ability "
            "to reach the internet."
        )
    elif "disk" in lower or "space" in lower:
        parts.append(
            "\n\nSuggestion: Free up disk space with 'docker system prune' "
            "or check available storage."
        )
    elif "permission" in lower or "denied" in lower:
        parts.append(
            "\n\nSuggestion: Check Docker permissions. You may need to add your user "
            "to the 'docker' group."
        )

    return "".join(parts)


def build_image(
    conn: EngineConnection,
    progress: ProgressReporter,
    *,
    no_cache: bool = False,
    dockerfile: str | None = None,
) -> ImageDescriptor:
    """Build the service image from the embedded Dockerfile.

    Args:
        conn: Engine connection.
        progress: Reporter for build output.
        no_cache: Ignore the engine's layer cache.
        dockerfile: Override the embedded Dockerfile (tests).

    Returns:
        Descriptor of ``boxkeeper:latest``.

    Raises:
        ImageBuildError: The engine reported an error; message carries its text
            verbatim followed by recent output.
    """
    tag = local_image_ref()
    logger.debug("Building image %s (no_cache=%s)", tag, no_cache)

    recent_size = read_log_buffer_size(BUILD_LOG_BUFFER_ENV, BUILD_LOG_BUFFER)
    error_size = read_log_buffer_size(ERROR_LOG_BUFFER_ENV, ERROR_LOG_BUFFER)
    recent_logs: deque[str] = deque(maxlen=recent_size)
    error_logs: deque[str] = deque(maxlen=error_size)
    image_id: str | None = None

    progress.add_spinner("build", "Initializing...")
    try:
        stream = conn.api.build(
            fileobj=io.BytesIO(create_build_context(dockerfile)),
            custom_context=True,
            encoding="gzip",
            tag=tag,
            rm=True,
            nocache=no_cache,
            decode=True,
        )
        for chunk in stream:
            message = (chunk.get("stream") or "").strip()
            if message:
                progress.update_spinner("build", message)
                recent_logs.append(message)
                if is_error_line(message):
                    error_logs.append(message)
                if message.startswith("Step "):
                    logger.debug("Build step: %s", message)

            if "error" in chunk:
                error = str(chunk["error"]).strip()
                progress.abandon_all(error)
                raise ImageBuildError(format_build_error(error, recent_logs, error_logs))

            aux = chunk.get("aux")
            if isinstance(aux, dict) and aux.get("ID"):
                image_id = aux["ID"]
    except CLIENT_ERRORS as e:
        progress.abandon_all("Build failed")
        raise ImageBuildError(format_build_error(str(e), recent_logs, error_logs)) from e

    progress.finish("build", f"Build complete: {image_id or 'unknown'}")
    version = get_image_version(conn) or __version__
    save_provenance(ImageProvenance.built(version), conn.host_name)
    return _describe_local(conn, None)


# === Pull ===


def _consume_pull_stream(
    chunks: Iterable[dict[str, Any]], reference: str, progress: ProgressReporter
) -> None:
    progress.add_spinner("pull", f"Pulling {reference}...")
    for chunk in chunks:
        if "error" in chunk:
            error = str(chunk["error"]).strip()
            progress.abandon_all(error)
            raise ImageError(error)

        layer_id = chunk.get("id")
        status = chunk.get("status") or ""
        if layer_id:
            if status in ("Already exists", "Pull complete"):
                if not progress.has_task(layer_id):
                    progress.add_spinner(layer_id, status)
                progress.finish(layer_id, status)
            elif status in ("Downloading", "Extracting"):
                detail = chunk.get("progressDetail") or {}
                total = detail.get("total") or 0
                if total > 0:
                    progress.update_layer(layer_id, detail.get("current") or 0, total, status)
            else:
                progress.update_spinner(layer_id, status)
        elif status:
            progress.update_spinner("pull", status)
    progress.finish("pull", f"Pull complete: {reference}")


def pull_from_registry(
    conn: EngineConnection,
    registry: Registry,
    progress: ProgressReporter,
    *,
    tag: str = IMAGE_TAG_DEFAULT,
    policy: RetryPolicy = REGISTRY_PULL,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Pull ``registry.repository:tag``, retrying with backoff.

    Raises:
        RetryExhausted: Every attempt failed; ``errors`` holds each failure.
    """
    reference = f"{registry.repository}:{tag}"

    def attempt(number: int) -> None:
        logger.debug("Pull attempt %d/%d for %s", number + 1, policy.max_attempts, reference)
        try:
            chunks = conn.api.pull(registry.repository, tag=tag, stream=True, decode=True)
            _consume_pull_stream(chunks, reference, progress)
        except CLIENT_ERRORS as e:
            progress.abandon_all("Pull failed")
            raise ImageError(f"Pull failed: {e}") from e

    retry_with_backoff(
        attempt,
        policy,
        retry_on=(ImageError,),
        sleep=sleep,
        describe=f"pull {reference}",
    )


def pull_image(
    conn: EngineConnection,
    progress: ProgressReporter,
    *,
    tag: str = IMAGE_TAG_DEFAULT,
    registries: tuple[Registry, ...] = REGISTRIES,
    policy: RetryPolicy = REGISTRY_PULL,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageDescriptor:
    """Pull the service image, falling back across registries.

    The winning image is tagged as ``boxkeeper:<tag>``.

    Returns:
        Descriptor naming the registry that served the image.

    Raises:
        ImagePullError: Every registry failed; carries each registry's last error.
    """
    failures: dict[str, str] = {}
    for registry in registries:
        try:
            pull_from_registry(conn, registry, progress, tag=tag, policy=policy, sleep=sleep)
        except RetryExhausted as e:
            failures[registry.label] = str(e.last_error)
            logger.warning("%s pull failed: %s", registry.label, e.last_error)
            continue

        source_ref = f"{registry.repository}:{tag}"
        try:
            conn.api.tag(source_ref, IMAGE_NAME_LOCAL, tag)
        except CLIENT_ERRORS as e:
            raise translate_engine_error(e, conn.label) from e

        version = get_image_version(conn, source_ref) or __version__
        save_provenance(ImageProvenance.prebuilt(version, registry.host), conn.host_name)
        logger.info("Pulled %s from %s", source_ref, registry.label)
        return ImageDescriptor(
            repository=IMAGE_NAME_LOCAL,
            tag=tag,
            registry=registry.host,
            present=True,
        )

    raise ImagePullError(failures)


# === Update / rollback ===


def tag_current_as_previous(conn: EngineConnection) -> bool:
    """Keep the current image as ``boxkeeper:previous``.

    Returns:
        False when there is no current image (nothing to keep).
    """
    current = local_image_ref()
    if conn.inspect_image(current) is None:
        logger.debug("No current image to keep as previous")
        return False
    try:
        conn.api.tag(current, IMAGE_NAME_LOCAL, IMAGE_TAG_PREVIOUS)
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e

    record = load_provenance(conn.host_name)
    if record is not None:
        save_provenance(record, conn.host_name, previous=True)
    else:
        # A record left from an older previous image would describe the wrong image
        clear_provenance(conn.host_name, previous=True)
    return True


def update_image(
    conn: EngineConnection,
    progress: ProgressReporter,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageDescriptor:
    """Keep the current image for rollback, then pull the newest one."""
    if tag_current_as_previous(conn):
        logger.info("Kept current image as %s", local_image_ref(IMAGE_TAG_PREVIOUS))
    return pull_image(conn, progress, sleep=sleep)


def rollback_image(conn: EngineConnection) -> ImageDescriptor:
    """Make the previous image current again.

    Raises:
        NoPreviousImageError: No update has kept a previous image yet.
    """
    if not has_previous_image(conn):
        raise NoPreviousImageError()
    try:
        conn.api.tag(local_image_ref(IMAGE_TAG_PREVIOUS), IMAGE_NAME_LOCAL, IMAGE_TAG_DEFAULT)
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e

    record = load_provenance(conn.host_name, previous=True)
    if record is not None:
        save_provenance(record, conn.host_name)
    logger.info("Rolled back to %s", local_image_ref(IMAGE_TAG_PREVIOUS))
    return _describe_local(conn, record.registry if record else None)


def ensure_image(
    conn: EngineConnection,
    strategy: ImageStrategy,
    progress: ProgressReporter,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageDescriptor:
    """Make ``boxkeeper:latest`` present using the given strategy."""
    logger.debug("Acquiring image via %s on %s", strategy.value, conn.label)
    if strategy is ImageStrategy.PULL:
        return pull_image(conn, progress, sleep=sleep)
    if strategy is ImageStrategy.BUILD:
        return build_image(conn, progress)
    if strategy is ImageStrategy.BUILD_NO_CACHE:
        return build_image(conn, progress, no_cache=True)
    if strategy is ImageStrategy.UPDATE:
        return update_image(conn, progress, sleep=sleep)
    return rollback_image(conn)
