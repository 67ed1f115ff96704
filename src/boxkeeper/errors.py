"""Unified exception hierarchy for boxkeeper.

All custom exceptions inherit from BoxkeeperError for consistent error handling.
Each exception carries only the structured data callers act on (a PID, an
attempt count, an offending log line) plus an optional ``hint``: the command
an operator can run to resolve the problem. The CLI prints both.

Dependency direction:
    This module has NO internal dependencies (leaf module).
    It may be imported by: all other boxkeeper modules.
    It should NOT import from any other boxkeeper modules.
"""

from __future__ import annotations


class BoxkeeperError(Exception):
    """Base exception for all boxkeeper errors.

    Attributes:
        hint: Optional actionable next step shown below the error message.
        log_tail: Recent container output attached by the caller, if any.
    """

    def __init__(self, message: str = "", *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint
        self.log_tail: list[str] = []


class ConfigError(BoxkeeperError):
    """Configuration-related errors.

    Examples:
        - Invalid configuration values
        - Configuration file parse errors
        - Unknown configuration keys
    """


class ValidationError(BoxkeeperError):
    """Input validation errors.

    Examples:
        - Mutually exclusive flags requested together
        - Invalid username
        - Malformed mount specification
    """


# === Instance lock ===


class LockError(BoxkeeperError):
    """PID file could not be created, read or written."""


class AlreadyRunningError(LockError):
    """Another boxkeeper process holds the instance lock."""

    def __init__(self, pid: int) -> None:
        super().__init__(
            f"Another boxkeeper process is already running (PID {pid})",
            hint=f"Wait for it to finish, or stop it with: kill {pid}",
        )
        self.pid = pid


# === Engine connection ===


class EngineError(BoxkeeperError):
    """Docker engine errors.

    Base class for all engine-related exceptions.
    """


class EngineNotRunningError(EngineError):
    """Raised when the Docker daemon is not reachable."""


class EnginePermissionError(EngineError):
    """Raised when the current user may not talk to the Docker socket."""


class EngineConnectionError(EngineError):
    """Raised for any other failure to reach or use the engine."""


# === Remote hosts and tunnels ===


class HostError(BoxkeeperError):
    """Remote host and SSH tunnel errors."""


class HostNotFoundError(HostError):
    """Raised when a named host is not in hosts.json."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Host '{name}' not found", hint="List hosts with: boxkeeper host list")
        self.name = name


class HostExistsError(HostError):
    """Raised when adding a host whose name is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Host '{name}' already exists",
            hint=f"Remove it first with: boxkeeper host remove {name}",
        )
        self.name = name


class SshSpawnError(HostError):
    """Raised when the ssh client process cannot be started."""


class SshAuthError(HostError):
    """Raised when SSH authentication or host key verification fails."""


class SshConnectionError(HostError):
    """Raised when the SSH connection fails for any other reason."""


class TunnelTimeoutError(HostError):
    """Raised when the forwarded port never accepted a connection."""

    def __init__(self, attempts: int, detail: str = "") -> None:
        message = f"SSH tunnel did not become ready after {attempts} attempts"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, hint="Check the host with: boxkeeper host test <name>")
        self.attempts = attempts


class RemoteEngineUnavailableError(HostError):
    """Raised when the remote host has no usable Docker installation."""


# === Images ===


class ImageError(BoxkeeperError):
    """Image acquisition errors."""


class ImageBuildError(ImageError):
    """Raised when the image build fails."""


class ImagePullError(ImageError):
    """Raised when every registry failed to provide the image.

    Attributes:
        failures: Mapping of registry label to its last failure text.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        if len(failures) > 1:
            details = ". ".join(f"{label}: {reason}" for label, reason in failures.items())
            message = f"Failed to pull from all registries. {details}"
        else:
            details = "; ".join(f"{label}: {reason}" for label, reason in failures.items())
            message = f"Failed to pull image. {details}"
        super().__init__(
            message,
            hint="Check your network, or build locally with: boxkeeper start --cached-rebuild",
        )
        self.failures = dict(failures)


class NoPreviousImageError(ImageError):
    """Raised on rollback when no previous image was kept."""

    def __init__(self) -> None:
        super().__init__(
            "No previous image available for rollback. "
            "Update at least once before using rollback.",
            hint="boxkeeper update",
        )


class ImageMissingError(ImageError):
    """Raised when creating a container for an image that is not present."""

    def __init__(self, image: str) -> None:
        super().__init__(f"Image '{image}' not found", hint="boxkeeper start --pull")
        self.image = image


# === Containers ===


class ContainerError(BoxkeeperError):
    """Raised when container operations fail."""


class ContainerExistsError(ContainerError):
    """Raised when the well-known container name is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Container '{name}' already exists",
            hint="Remove it first with: boxkeeper stop --remove",
        )
        self.name = name


class ContainerNotRunningError(ContainerError):
    """Raised when an operation needs a running container."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Container '{name}' is not running", hint="boxkeeper start")
        self.name = name


class PortInUseError(ContainerError):
    """Raised when the host port is already bound.

    Attributes:
        port: The requested host port.
        suggestion: Next free port found nearby, if any.
    """

    def __init__(self, port: int, suggestion: int | None = None) -> None:
        if suggestion is not None:
            hint = f"Use another port, e.g.: boxkeeper start --port {suggestion}"
        else:
            hint = "Free the port or choose another one with --port"
        super().__init__(f"Port {port} is already in use", hint=hint)
        self.port = port
        self.suggestion = suggestion


class SecurityGateError(ContainerError):
    """Raised when the service would start without any authenticated user."""

    def __init__(self) -> None:
        super().__init__(
            "Refusing to create the service container: no users are configured "
            "and unauthenticated access has not been allowed",
            hint="Add a user with: boxkeeper user add <username>",
        )


# === Readiness ===


class ReadinessError(BoxkeeperError):
    """The started service did not become ready."""


class ReadinessTimeoutError(ReadinessError):
    """Raised when the service did not accept connections in time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Service did not become ready within {timeout:g}s",
            hint="Inspect the container output with: boxkeeper logs",
        )
        self.timeout = timeout


class FatalLogError(ReadinessError):
    """Raised when the container logs show an unrecoverable failure.

    Attributes:
        line: The offending log line.
    """

    def __init__(self, line: str) -> None:
        super().__init__(
            f"Fatal error detected in container logs: {line}",
            hint="Inspect the container output with: boxkeeper logs",
        )
        self.line = line


class HealthCheckError(ReadinessError):
    """Raised when the service health endpoint cannot be read or reports failure."""


# === Service registration ===


class ServiceInstallError(BoxkeeperError):
    """Raised when the boxkeeper unit cannot be installed or removed."""
