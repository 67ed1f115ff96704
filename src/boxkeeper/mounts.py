"""User bind mounts for the service container.

Mounts are configured as ``/host/path:/container/path[:ro|rw]`` strings in
config.json and turned into docker-py Mount objects at container creation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from docker.types import Mount

from .errors import ValidationError
from .logging import get_logger
from .paths import is_windows_path, resolve_for_docker

logger = get_logger(__name__)

MOUNT_MODES = ("ro", "rw")

# Host directories that should never be handed to the service
SYSTEM_PATHS = ("/etc", "/usr", "/bin", "/sbin", "/lib", "/var")


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or is_windows_path(path)


def _split_spec(spec: str) -> list[str]:
    # A Windows drive letter ("C:/...") contains a colon of its own
    if is_windows_path(spec):
        head, rest = spec[:2], spec[2:]
        parts = rest.split(":")
        parts[0] = head + parts[0]
        return parts
    return spec.split(":")


@dataclass(frozen=True)
class ParsedMount:
    """One host directory mounted into the container."""

    host_path: str
    container_path: str
    mode: str = "rw"

    @property
    def read_only(self) -> bool:
        return self.mode == "ro"

    @classmethod
    def parse(cls, spec: str) -> ParsedMount:
        """Parse ``host:container[:mode]``.

        Raises:
            ValidationError: Wrong number of fields, relative paths or unknown mode.
        """
        parts = _split_spec(spec.strip())
        if len(parts) not in (2, 3) or not all(parts):
            raise ValidationError(
                f"Invalid mount format: {spec!r}",
                hint="Expected /host/path:/container/path[:ro|rw]",
            )

        host_path, container_path = parts[0], parts[1]
        mode = parts[2] if len(parts) == 3 else "rw"

        if not _is_absolute(host_path):
            raise ValidationError(f"Host path must be absolute: {host_path}")
        if not container_path.startswith("/"):
            raise ValidationError(f"Container path must be absolute: {container_path}")
        if mode not in MOUNT_MODES:
            raise ValidationError(f"Invalid mount mode {mode!r}, expected ro or rw")

        return cls(host_path=host_path, container_path=container_path, mode=mode)

    def format(self) -> str:
        return f"{self.host_path}:{self.container_path}:{self.mode}"

    def to_docker_mount(self) -> Mount:
        return Mount(
            target=self.container_path,
            source=resolve_for_docker(self.host_path),
            type="bind",
            read_only=self.read_only,
        )


def is_system_path(path: str) -> bool:
    """Check whether a host path lies inside a system directory."""
    normalized = os.path.normpath(path)
    return any(
        normalized == system or normalized.startswith(system + "/") for system in SYSTEM_PATHS
    )


def validate_mount_path(path: str) -> Path:
    """Check that a host mount source exists and is a directory.

    Returns:
        The resolved path.

    Raises:
        ValidationError: Missing path or not a directory.
    """
    resolved = Path(path).expanduser()
    if not resolved.exists():
        raise ValidationError(f"Mount path does not exist: {path}")
    if not resolved.is_dir():
        raise ValidationError(f"Mount path is not a directory: {path}")
    if is_system_path(str(resolved)):
        logger.warning("Mounting system directory %s into the container", resolved)
    return resolved


def parse_mounts(specs: list[str]) -> list[Mount]:
    """Turn configured mount strings into docker-py mounts."""
    return [ParsedMount.parse(spec).to_docker_mount() for spec in specs]
