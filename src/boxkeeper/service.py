"""Service orchestration: the steps behind start, stop, restart, update and status.

Each function takes an open EngineConnection and composes the lower layers
(images, container, users, readiness) in a fixed order. The CLI owns the
instance lock and the connection; nothing here prints.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterator

import requests
from docker.errors import NotFound

from . import __version__
from .config import Config
from .constants import CONTAINER_NAME, CONTAINER_PORT, DEFAULT_STOP_TIMEOUT, LOG_TAIL_LINES
from .container import (
    ContainerRecord,
    ContainerState,
    StopOutcome,
    check_exclusive_flags,
    check_security_gate,
    create_container,
    get_container,
    remove_container,
    start_container,
    stop_container,
)
from .engine import CLIENT_ERRORS, EngineConnection, translate_engine_error
from .errors import BoxkeeperError, ContainerError, HealthCheckError, NoPreviousImageError
from .hosts import load_hosts
from .images import (
    ImageDescriptor,
    ImageStrategy,
    ensure_image,
    get_image_version,
    has_previous_image,
    image_exists,
    versions_compatible,
)
from .logging import get_logger
from .progress import ProgressReporter
from .provenance import ImageProvenance, load_provenance
from .readiness import ReadinessState, tcp_probe, wait_ready
from .users import recreate_users, run_exec

logger = get_logger(__name__)

HEALTH_PATH = "/global/health"
HEALTH_TIMEOUT = 5

WILDCARD_ADDRESSES = ("0.0.0.0", "::")


@dataclass(frozen=True)
class StartOptions:
    """Options for one start invocation.

    Immutable; build it from CLI arguments with from_cli().
    """

    port: int | None = None
    pull: bool = False
    cached_rebuild: bool = False
    full_rebuild: bool = False
    timeout: float | None = None

    @property
    def replaces_container(self) -> bool:
        """Any image flag means the existing container is replaced."""
        return self.pull or self.cached_rebuild or self.full_rebuild

    @property
    def image_strategy(self) -> ImageStrategy | None:
        if self.full_rebuild:
            return ImageStrategy.BUILD_NO_CACHE
        if self.cached_rebuild:
            return ImageStrategy.BUILD
        if self.pull:
            return ImageStrategy.PULL
        return None

    @classmethod
    def from_cli(
        cls,
        *,
        port: int | None = None,
        pull: bool = False,
        cached_rebuild: bool = False,
        full_rebuild: bool = False,
        timeout: float | None = None,
    ) -> StartOptions:
        """Create StartOptions from CLI arguments.

        Raises:
            ValidationError: More than one image flag.
        """
        check_exclusive_flags(pull, cached_rebuild, full_rebuild)
        return cls(
            port=port,
            pull=pull,
            cached_rebuild=cached_rebuild,
            full_rebuild=full_rebuild,
            timeout=timeout,
        )


@dataclass(frozen=True)
class StartResult:
    url: str
    port: int
    already_running: bool = False
    container_id: str | None = None
    image: ImageDescriptor | None = None
    users_recreated: list[str] = field(default_factory=list)
    readiness: ReadinessState | None = None


@dataclass(frozen=True)
class UpdateResult:
    url: str
    image: ImageDescriptor
    rolled_back: bool
    users_recreated: list[str] = field(default_factory=list)

    @property
    def passwords_reset(self) -> bool:
        """Recreated users start locked and need a new password."""
        return bool(self.users_recreated)


@dataclass(frozen=True)
class HealthResponse:
    healthy: bool
    version: str


@dataclass(frozen=True)
class ServiceStatus:
    """Everything ``boxkeeper status`` shows."""

    target: str
    state: ContainerState
    url: str | None = None
    container_id: str | None = None
    image: str | None = None
    started_at: str | None = None
    uptime: float | None = None
    port_bindings: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    health: HealthResponse | None = None
    health_error: str | None = None
    provenance: ImageProvenance | None = None
    network_exposed: bool = False
    users: list[str] = field(default_factory=list)
    image_version: str | None = None

    @property
    def is_running(self) -> bool:
        return self.state is ContainerState.RUNNING

    @property
    def version_mismatch(self) -> bool:
        """The container runs an image built for a different boxkeeper release."""
        return not versions_compatible(__version__, self.image_version)


# === Addresses ===


def service_host(conn: EngineConnection, config: Config) -> str:
    """Address the service is reachable on from this machine."""
    if conn.is_remote:
        return load_hosts().get_host(conn.host_name).hostname
    if config.bind_address in WILDCARD_ADDRESSES or config.bind_address == "localhost":
        return "127.0.0.1"
    return config.bind_address


def service_url(conn: EngineConnection, config: Config, port: int) -> str:
    host = service_host(conn, config)
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


def in_container_probe(conn: EngineConnection) -> Callable[[str, int], bool]:
    """Probe the service port from inside the container.

    Used for remote hosts that publish the port on loopback only, where
    nothing on this machine can reach it.
    """

    def probe(_host: str, _port: int) -> bool:
        result = run_exec(conn, ["bash", "-c", f"exec 3<>/dev/tcp/127.0.0.1/{CONTAINER_PORT}"])
        return result.exit_code == 0

    return probe


def _attach_logs(conn: EngineConnection, error: BoxkeeperError) -> None:
    try:
        error.log_tail = conn.container_logs(CONTAINER_NAME, LOG_TAIL_LINES)
    except BoxkeeperError as e:
        logger.debug("Could not read container logs: %s", e)


# === Operations ===


def _default_strategy(config: Config) -> ImageStrategy:
    return ImageStrategy.BUILD if config.image_source == "build" else ImageStrategy.PULL


def start_service(
    conn: EngineConnection,
    config: Config,
    options: StartOptions,
    progress: ProgressReporter,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> StartResult:
    """Bring the service up, reusing whatever already exists.

    Order: flag check, engine check, replace or short-circuit, image,
    create, start, users, readiness.

    Raises:
        ValidationError: Conflicting image flags.
        EngineError: The engine is unreachable.
        SecurityGateError: No users and unauthenticated access not allowed.
        ReadinessError: The service did not come up; ``log_tail`` holds its output.
    """
    check_exclusive_flags(options.pull, options.cached_rebuild, options.full_rebuild)
    conn.verify_connection()

    if options.port is not None:
        config = replace(config, port=options.port)

    record = get_container(conn)
    # Refuse before touching a running service or spending time on an image
    if options.replaces_container or not record.exists:
        check_security_gate(config)

    if options.replaces_container and record.exists:
        logger.info("Replacing existing container")
        stop_container(conn, config.stop_timeout, clock=clock)
        remove_container(conn, force=True)
        record = ContainerRecord(name=record.name, state=ContainerState.ABSENT)
    elif record.is_running:
        logger.debug("Service already running on %s", conn.label)
        port = _published_port(record, config.port)
        return StartResult(
            url=service_url(conn, config, port),
            port=port,
            already_running=True,
            container_id=record.id,
        )

    image: ImageDescriptor | None = None
    strategy = options.image_strategy
    if strategy is None and not record.exists and not image_exists(conn):
        strategy = _default_strategy(config)
    if strategy is not None:
        image = ensure_image(conn, strategy, progress, sleep=sleep)
    progress.close()

    created = False
    if not record.exists:
        container_id = create_container(conn, config)
        created = True
    else:
        container_id = record.id
        # An existing container keeps the port it was created with
        config = replace(config, port=_published_port(record, config.port))

    try:
        start_container(conn)
    except ContainerError as e:
        _attach_logs(conn, e)
        raise

    users_recreated = recreate_users(conn, config.users) if created else []
    readiness = _wait_for_service(conn, config, options.timeout, sleep=sleep, clock=clock)
    return StartResult(
        url=service_url(conn, config, config.port),
        port=config.port,
        container_id=container_id,
        image=image,
        users_recreated=users_recreated,
        readiness=readiness,
    )


def _wait_for_service(
    conn: EngineConnection,
    config: Config,
    timeout: float | None,
    *,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
) -> ReadinessState:
    probe = tcp_probe
    if conn.is_remote and not config.is_network_exposed():
        probe = in_container_probe(conn)
    try:
        return wait_ready(
            conn,
            config.port,
            timeout or config.readiness_timeout,
            host=service_host(conn, config),
            probe=probe,
            sleep=sleep,
            clock=clock,
        )
    except BoxkeeperError as e:
        _attach_logs(conn, e)
        raise


def stop_service(
    conn: EngineConnection,
    timeout: int | None = None,
    remove: bool = False,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> StopOutcome:
    """Stop the service (idempotent), optionally removing the container."""
    conn.verify_connection()
    if timeout is None:
        timeout = DEFAULT_STOP_TIMEOUT
    outcome = stop_container(conn, timeout, clock=clock)
    if remove:
        remove_container(conn)
    return outcome


def restart_service(
    conn: EngineConnection,
    config: Config,
    progress: ProgressReporter,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> StartResult:
    conn.verify_connection()
    if get_container(conn).is_running:
        stop_container(conn, config.stop_timeout, clock=clock)
    return start_service(conn, config, StartOptions(), progress, sleep=sleep, clock=clock)


def update_service(
    conn: EngineConnection,
    config: Config,
    progress: ProgressReporter,
    rollback: bool = False,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> UpdateResult:
    """Replace the running container with a newer (or the previous) image.

    Passwords live in the container and are lost; users are recreated locked.

    Raises:
        NoPreviousImageError: Rollback requested without a previous image;
            checked before the service is touched.
    """
    conn.verify_connection()
    if rollback and not has_previous_image(conn):
        raise NoPreviousImageError()
    check_security_gate(config)

    stop_container(conn, config.stop_timeout, clock=clock)
    remove_container(conn, force=True)

    strategy = ImageStrategy.ROLLBACK if rollback else ImageStrategy.UPDATE
    image = ensure_image(conn, strategy, progress, sleep=sleep)
    progress.close()

    create_container(conn, config)
    try:
        start_container(conn)
    except ContainerError as e:
        _attach_logs(conn, e)
        raise
    users_recreated = recreate_users(conn, config.users)
    _wait_for_service(conn, config, None, sleep=sleep, clock=clock)

    return UpdateResult(
        url=service_url(conn, config, config.port),
        image=image,
        rolled_back=rollback,
        users_recreated=users_recreated,
    )


def iter_log_lines(
    conn: EngineConnection,
    tail: int,
    *,
    follow: bool = False,
    timestamps: bool = False,
) -> Iterator[str]:
    """Container output line by line, optionally following new output.

    Raises:
        ContainerError: The container does not exist.
    """
    try:
        if not follow:
            raw = conn.api.logs(
                CONTAINER_NAME, stdout=True, stderr=True, tail=tail, timestamps=timestamps
            )
            yield from raw.decode("utf-8", errors="replace").splitlines()
            return
        stream = conn.api.logs(
            CONTAINER_NAME,
            stdout=True,
            stderr=True,
            tail=tail,
            timestamps=timestamps,
            stream=True,
            follow=True,
        )
        pending = ""
        for chunk in stream:
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = pending.split("\n")
            yield from lines
        if pending:
            yield pending
    except NotFound as e:
        raise ContainerError(
            f"Container '{CONTAINER_NAME}' does not exist", hint="boxkeeper start"
        ) from e
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e, conn.label) from e


# === Health and status ===


def check_health(port: int, host: str = "127.0.0.1") -> HealthResponse:
    """Query the service health endpoint.

    Raises:
        HealthCheckError: Connection refused, timeout or non-200 answer.
    """
    url = f"http://{host}:{port}{HEALTH_PATH}"
    try:
        response = requests.get(url, timeout=HEALTH_TIMEOUT)
    except requests.ConnectionError as e:
        raise HealthCheckError("Connection refused - service may not be running") from e
    except requests.Timeout as e:
        raise HealthCheckError("Timeout - service may be starting") from e
    except requests.RequestException as e:
        raise HealthCheckError(f"Health request failed: {e}") from e

    if response.status_code != 200:
        raise HealthCheckError(f"Service unhealthy (HTTP {response.status_code})")
    try:
        data = response.json()
    except ValueError as e:
        raise HealthCheckError("Health endpoint returned invalid JSON") from e
    return HealthResponse(healthy=bool(data.get("healthy")), version=str(data.get("version", "")))


def parse_started_at(value: str | None) -> datetime | None:
    """Parse the engine's RFC3339 StartedAt (nanosecond precision) to UTC."""
    if not value or value.startswith("0001-"):
        return None
    try:
        return datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _published_port(record: ContainerRecord, fallback: int) -> int:
    for _, host_port in record.port_bindings.get(f"{CONTAINER_PORT}/tcp", []):
        if host_port.isdigit():
            return int(host_port)
    return fallback


def get_status(
    conn: EngineConnection,
    config: Config,
    *,
    health: Callable[[int, str], HealthResponse] | None = check_health,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> ServiceStatus:
    """Collect container, image and security state for one target.

    Pass ``health=None`` to skip the HTTP health check (quiet status).
    """
    conn.verify_connection()
    record = get_container(conn)
    status = ServiceStatus(
        target=conn.label,
        state=record.state,
        container_id=record.id,
        image=record.image,
        port_bindings=record.port_bindings,
        provenance=load_provenance(conn.host_name),
        network_exposed=config.is_network_exposed(),
        users=list(config.users),
        image_version=get_image_version(conn, record.image) if record.image else None,
    )
    if not record.is_running:
        return status

    port = _published_port(record, config.port)
    started = parse_started_at(record.started_at)
    uptime = (now() - started).total_seconds() if started else None

    health_response = None
    health_error = None
    if health is not None:
        try:
            health_response = health(port, service_host(conn, config))
        except HealthCheckError as e:
            health_error = str(e)

    return replace(
        status,
        url=service_url(conn, config, port),
        started_at=record.started_at,
        uptime=uptime,
        health=health_response,
        health_error=health_error,
    )
