"""Container lifecycle for the boxkeeper service.

There is exactly one service container per engine, named ``boxkeeper``. Its
lifecycle is a small state machine::

    ABSENT --create--> CREATED --start--> RUNNING --stop--> STOPPED
       ^                                                      |
       +------------------------remove------------------------+

Every transition is driven from here; callers read state through
get_container() and never build a ContainerRecord themselves.
"""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from docker.errors import APIError, NotFound
from docker.types import Mount

from .config import Config
from .constants import (
    COCKPIT_CONTAINER_PORT,
    CONTAINER_NAME,
    CONTAINER_PORT,
    CONTAINER_WORKDIR,
    DEFAULT_STOP_TIMEOUT,
    MOUNT_CONFIG,
    MOUNT_PROJECTS,
    MOUNT_SESSION,
    PORT_SCAN_RANGE,
    VOLUME_CONFIG,
    VOLUME_PROJECTS,
    VOLUME_SESSION,
)
from .engine import CLIENT_ERRORS, EngineConnection, translate_engine_error
from .errors import (
    ContainerError,
    ContainerExistsError,
    ImageMissingError,
    PortInUseError,
    SecurityGateError,
    ValidationError,
)
from .images import local_image_ref
from .logging import get_logger
from .mounts import parse_mounts

logger = get_logger(__name__)

# Only needed when the container boots a full init system for the admin console
COCKPIT_TMPFS = {"/run": "", "/run/lock": "", "/tmp": ""}
COCKPIT_CAPABILITIES = ["SYS_ADMIN"]


class ContainerState(str, Enum):
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


# Engine status strings grouped into lifecycle states
_STATUS_MAP = {
    "created": ContainerState.CREATED,
    "running": ContainerState.RUNNING,
    "restarting": ContainerState.RUNNING,
    "paused": ContainerState.RUNNING,
    "exited": ContainerState.STOPPED,
    "dead": ContainerState.STOPPED,
    "removing": ContainerState.STOPPED,
}


@dataclass(frozen=True)
class ContainerRecord:
    """Service container as last inspected on the engine."""

    name: str
    state: ContainerState
    id: str | None = None
    image: str | None = None
    started_at: str | None = None
    port_bindings: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    mounts: list[str] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return self.state is not ContainerState.ABSENT

    @property
    def is_running(self) -> bool:
        return self.state is ContainerState.RUNNING

    @classmethod
    def from_inspect(cls, name: str, info: dict[str, Any] | None) -> ContainerRecord:
        if info is None:
            return cls(name=name, state=ContainerState.ABSENT)

        state_info = info.get("State") or {}
        status = state_info.get("Status") or ""
        state = _STATUS_MAP.get(status, ContainerState.STOPPED)

        bindings: dict[str, list[tuple[str, str]]] = {}
        raw_ports = (info.get("HostConfig") or {}).get("PortBindings") or {}
        for container_port, host_list in raw_ports.items():
            bindings[container_port] = [
                (entry.get("HostIp") or "", entry.get("HostPort") or "")
                for entry in host_list or []
            ]

        mounts = [
            f"{m.get('Name') or m.get('Source')}:{m.get('Destination')}"
            for m in info.get("Mounts") or []
        ]

        return cls(
            name=name,
            state=state,
            id=info.get("Id"),
            image=(info.get("Config") or {}).get("Image"),
            started_at=state_info.get("StartedAt") if state is ContainerState.RUNNING else None,
            port_bindings=bindings,
            mounts=mounts,
        )


@dataclass(frozen=True)
class StopOutcome:
    """Result of an idempotent stop.

    Attributes:
        already_stopped: Nothing was running (absent or not running).
        elapsed: Seconds the stop took.
        forced: The graceful timeout was used up, so the engine likely killed it.
    """

    already_stopped: bool
    elapsed: float = 0.0
    forced: bool = False


def get_container(conn: EngineConnection, name: str = CONTAINER_NAME) -> ContainerRecord:
    """Inspect the service container."""
    return ContainerRecord.from_inspect(name, conn.inspect_container(name))


# === Pre-flight checks ===


def check_exclusive_flags(pull: bool, cached_rebuild: bool, full_rebuild: bool) -> None:
    """Reject more than one image flag.

    Raises:
        ValidationError: Two or more of the flags are set.
    """
    chosen = [
        flag
        for flag, enabled in (
            ("--pull", pull),
            ("--cached-rebuild", cached_rebuild),
            ("--full-rebuild", full_rebuild),
        )
        if enabled
    ]
    if len(chosen) > 1:
        raise ValidationError(
            f"Options {', '.join(chosen)} are mutually exclusive",
            hint="Pick one image option per invocation",
        )


def check_security_gate(config: Config) -> None:
    """Refuse an unauthenticated service unless explicitly allowed.

    Raises:
        SecurityGateError: No users and no opt-in.
    """
    if not config.users and not config.allow_unauthenticated_network:
        raise SecurityGateError()


def check_port_available(port: int, bind_address: str = "127.0.0.1") -> bool:
    """Check whether a TCP port can be bound on this machine."""
    family = socket.AF_INET6 if ":" in bind_address else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((bind_address, port))
        except OSError:
            return False
    return True


def find_next_available_port(
    port: int, bind_address: str = "127.0.0.1", scan_range: int = PORT_SCAN_RANGE
) -> int | None:
    """First free port in ``port+1 .. port+scan_range``, or None."""
    for candidate in range(port + 1, min(port + scan_range, 65535) + 1):
        if check_port_available(candidate, bind_address):
            return candidate
    return None


def _bind_host(bind_address: str) -> str:
    return "127.0.0.1" if bind_address == "localhost" else bind_address


# === Transitions ===


def _volume_mounts() -> list[Mount]:
    return [
        Mount(target=MOUNT_SESSION, source=VOLUME_SESSION, type="volume"),
        Mount(target=MOUNT_PROJECTS, source=VOLUME_PROJECTS, type="volume"),
        Mount(target=MOUNT_CONFIG, source=VOLUME_CONFIG, type="volume"),
    ]


def _is_port_conflict(message: str) -> bool:
    lowered = message.lower()
    return "port is already allocated" in lowered or "address already in use" in lowered


def create_container(
    conn: EngineConnection,
    config: Config,
    *,
    image: str | None = None,
    name: str = CONTAINER_NAME,
) -> str:
    """Create the service container (does not start it).

    Args:
        conn: Verified engine connection.
        config: Port, bind address, users, mounts and console settings.
        image: Image reference (defaults to ``boxkeeper:latest``).
        name: Container name.

    Returns:
        The new container id.

    Raises:
        SecurityGateError: No users configured and unauthenticated access not allowed.
        PortInUseError: The host port is taken (local engine only).
        ContainerExistsError: A container with this name exists.
        ImageMissingError: The image is not present.
    """
    check_security_gate(config)

    bind_host = _bind_host(config.bind_address)
    if not conn.is_remote and not check_port_available(config.port, bind_host):
        raise PortInUseError(config.port, find_next_available_port(config.port, bind_host))

    image_ref = image or local_image_ref()
    if conn.inspect_container(name) is not None:
        raise ContainerExistsError(name)
    if conn.inspect_image(image_ref) is None:
        raise ImageMissingError(image_ref)

    ports = [CONTAINER_PORT]
    port_bindings: dict[int, Any] = {CONTAINER_PORT: (bind_host, config.port)}
    environment = list(config.container_env)
    extra: dict[str, Any] = {}
    if config.cockpit_enabled:
        ports.append(COCKPIT_CONTAINER_PORT)
        port_bindings[COCKPIT_CONTAINER_PORT] = (bind_host, config.cockpit_port)
        environment.append("BOXKEEPER_INIT=systemd")
        extra = {
            "cap_add": COCKPIT_CAPABILITIES,
            "cgroupns": "private",
            "privileged": True,
            "tmpfs": COCKPIT_TMPFS,
        }

    logger.debug(
        "Creating container %s from %s on %s:%d", name, image_ref, bind_host, config.port
    )
    try:
        host_config = conn.api.create_host_config(
            port_bindings=port_bindings,
            mounts=_volume_mounts() + parse_mounts(config.mounts),
            auto_remove=False,
            **extra,
        )
        response = conn.api.create_container(
            image_ref,
            name=name,
            hostname=CONTAINER_NAME,
            working_dir=CONTAINER_WORKDIR,
            ports=ports,
            environment=environment or None,
            host_config=host_config,
        )
    except APIError as e:
        if _is_port_conflict(str(e)):
            raise PortInUseError(config.port) from e
        raise ContainerError(f"Failed to create container {name}: {e.explanation or e}") from e
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e

    container_id = response.get("Id", "")
    logger.debug("Container created with id %s", container_id)
    return container_id


def start_container(conn: EngineConnection, name: str = CONTAINER_NAME) -> None:
    """Start an existing container.

    Raises:
        PortInUseError: The engine could not bind the host port.
        ContainerError: Any other start failure.
    """
    logger.debug("Starting container %s", name)
    try:
        conn.api.start(name)
    except NotFound as e:
        raise ContainerError(f"Container '{name}' not found", hint="boxkeeper start") from e
    except APIError as e:
        port = _configured_host_port(conn, name) if _is_port_conflict(str(e)) else None
        if port is not None:
            raise PortInUseError(port) from e
        raise ContainerError(f"Failed to start container {name}: {e.explanation or e}") from e
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e


def _configured_host_port(conn: EngineConnection, name: str) -> int | None:
    record = get_container(conn, name)
    for _, host_port in record.port_bindings.get(f"{CONTAINER_PORT}/tcp", []):
        if host_port.isdigit():
            return int(host_port)
    return None


def stop_container(
    conn: EngineConnection,
    timeout: int = DEFAULT_STOP_TIMEOUT,
    *,
    name: str = CONTAINER_NAME,
    clock: Callable[[], float] = time.monotonic,
) -> StopOutcome:
    """Stop the container, gracefully first and forcefully after ``timeout``.

    Stopping an absent or already stopped container succeeds with
    ``already_stopped=True``.
    """
    record = get_container(conn, name)
    if not record.is_running:
        logger.debug("Container %s is %s, nothing to stop", name, record.state.value)
        return StopOutcome(already_stopped=True)

    started = clock()
    try:
        conn.api.stop(name, timeout=timeout)
    except NotFound:
        return StopOutcome(already_stopped=True)
    except APIError as e:
        if e.status_code == 304 or "is not running" in str(e).lower():
            logger.debug("Container %s was already stopped", name)
            return StopOutcome(already_stopped=True)
        raise ContainerError(f"Failed to stop container {name}: {e.explanation or e}") from e
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e

    elapsed = clock() - started
    forced = elapsed >= timeout
    logger.debug("Container %s stopped in %.1fs (forced=%s)", name, elapsed, forced)
    return StopOutcome(already_stopped=False, elapsed=elapsed, forced=forced)


def remove_container(
    conn: EngineConnection, force: bool = False, *, name: str = CONTAINER_NAME
) -> bool:
    """Remove the container, keeping its volumes.

    Returns:
        False when there was no container to remove.
    """
    logger.debug("Removing container %s (force=%s)", name, force)
    try:
        conn.api.remove_container(name, force=force, v=False)
    except NotFound:
        return False
    except APIError as e:
        raise ContainerError(f"Failed to remove container {name}: {e.explanation or e}") from e
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e
    return True
