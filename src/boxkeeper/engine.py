"""Docker engine connections for boxkeeper.

Wraps a docker-py client bound either to the platform-default engine socket or
to an SSH-forwarded TCP port, and maps low-level client failures to the
boxkeeper error hierarchy. Every lifecycle operation takes an
:class:`EngineConnection` and should call :meth:`EngineConnection.verify_connection`
before trusting it.
"""

from __future__ import annotations

import contextlib
import time
from typing import Any, Callable

import docker
import requests
from docker.errors import DockerException, NotFound

from .constants import ENGINE_CLIENT_TIMEOUT
from .errors import (
    EngineConnectionError,
    EngineError,
    EngineNotRunningError,
    EnginePermissionError,
)
from .hosts import HostConfig, load_hosts
from .logging import get_logger
from .retry import ENGINE_CONNECT, RetryExhausted, RetryPolicy, retry_with_backoff
from .tunnel import SshTunnel

logger = get_logger(__name__)

LOCAL_HOST_NAME = "local"

# Client-side failures: the engine answered badly or not at all
CLIENT_ERRORS = (DockerException, requests.RequestException)

HINT_NOT_RUNNING = "Start Docker (e.g. 'sudo systemctl start docker' or open Docker Desktop)"
HINT_PERMISSION = "Add your user to the docker group: sudo usermod -aG docker $USER"


def translate_engine_error(exc: BaseException, target: str = LOCAL_HOST_NAME) -> EngineError:
    """Map a docker-py or transport exception to an EngineError.

    Args:
        exc: Exception raised by docker-py or requests.
        target: Engine label for the message ("local" or a host name).

    Returns:
        EngineNotRunningError, EnginePermissionError or EngineConnectionError.
    """
    if isinstance(exc, EngineError):
        return exc
    msg = str(exc)
    lowered = msg.lower()
    if (
        "cannot connect to the docker daemon" in lowered
        or "connection refused" in lowered
        or "no such file or directory" in lowered
    ):
        return EngineNotRunningError(
            f"Docker daemon is not running ({target}): {msg}", hint=HINT_NOT_RUNNING
        )
    if "permission denied" in lowered:
        return EnginePermissionError(
            f"Permission denied accessing Docker ({target})", hint=HINT_PERMISSION
        )
    return EngineConnectionError(f"Docker connection failed ({target}): {msg}")


class EngineConnection:
    """An open engine client, plus the SSH tunnel it runs over when remote.

    The connection owns its tunnel: closing the connection closes the tunnel,
    so a remote client never outlives the forwarded port it talks to.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        host_name: str | None = None,
        tunnel: SshTunnel | None = None,
    ) -> None:
        self.client = client
        self.host_name = host_name
        self.tunnel = tunnel
        self._closed = False

    @property
    def is_remote(self) -> bool:
        return self.host_name is not None

    @property
    def label(self) -> str:
        return self.host_name or LOCAL_HOST_NAME

    @property
    def api(self) -> docker.APIClient:
        """Low-level API client (inspect, create, build, pull, exec, ...)."""
        return self.client.api

    def verify_connection(self) -> None:
        """Ping the engine.

        Raises:
            EngineError: The engine (or the tunnel in front of it) is gone.
        """
        if self.tunnel is not None and not self.tunnel.is_alive():
            raise EngineConnectionError(
                f"SSH tunnel to {self.host_name} is no longer running",
                hint=f"Check the host with: boxkeeper host test {self.host_name}",
            )
        try:
            self.client.ping()
        except CLIENT_ERRORS as e:
            logger.debug("Engine ping failed (%s): %s", self.label, e)
            raise translate_engine_error(e, self.label) from e

    def version(self) -> dict[str, Any]:
        """Engine version information."""
        try:
            return self.client.version()
        except CLIENT_ERRORS as e:
            raise translate_engine_error(e, self.label) from e

    def inspect_container(self, name: str) -> dict[str, Any] | None:
        """Inspect a container, or None if it does not exist."""
        try:
            return self.api.inspect_container(name)
        except NotFound:
            return None
        except CLIENT_ERRORS as e:
            raise translate_engine_error(e, self.label) from e

    def inspect_image(self, ref: str) -> dict[str, Any] | None:
        """Inspect an image, or None if it does not exist."""
        try:
            return self.api.inspect_image(ref)
        except NotFound:
            return None
        except CLIENT_ERRORS as e:
            raise translate_engine_error(e, self.label) from e

    def container_logs(self, name: str, tail: int) -> list[str]:
        """Last ``tail`` lines of combined stdout/stderr; empty if the container is gone."""
        try:
            raw = self.api.logs(name, stdout=True, stderr=True, tail=tail)
        except NotFound:
            return []
        except CLIENT_ERRORS as e:
            raise translate_engine_error(e, self.label) from e
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return [line for line in raw.splitlines() if line.strip()]

    def close(self) -> None:
        """Close the client, then the tunnel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(Exception):
            self.client.close()
        if self.tunnel is not None:
            self.tunnel.close()

    def __enter__(self) -> EngineConnection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()


def connect_local(timeout: int = ENGINE_CLIENT_TIMEOUT) -> EngineConnection:
    """Connect to the engine on this machine.

    Uses the platform-default socket unless DOCKER_HOST says otherwise.

    Raises:
        EngineError: The engine is unreachable.
    """
    logger.debug("Connecting to local Docker engine")
    try:
        client = docker.from_env(timeout=timeout)
    except CLIENT_ERRORS as e:
        raise translate_engine_error(e) from e
    return EngineConnection(client)


def _open_client(url: str, timeout: int) -> docker.DockerClient:
    client = docker.DockerClient(base_url=url, timeout=timeout)
    try:
        client.ping()
    except BaseException:
        client.close()
        raise
    return client


def connect_remote(
    host: HostConfig,
    host_name: str,
    *,
    policy: RetryPolicy = ENGINE_CONNECT,
    sleep: Callable[[float], None] = time.sleep,
    timeout: int = ENGINE_CLIENT_TIMEOUT,
) -> EngineConnection:
    """Connect to the engine on a remote host through an SSH tunnel.

    Args:
        host: SSH connection parameters.
        host_name: Name of the host entry.
        policy: Retry schedule for opening and pinging the client.
        sleep: Sleep function (injectable for tests).
        timeout: docker-py HTTP timeout in seconds.

    Returns:
        A verified connection that owns the tunnel.

    Raises:
        HostError: The tunnel could not be established.
        EngineConnectionError: Every client attempt failed; lists each reason.
    """
    tunnel = SshTunnel.open(host, host_name)
    try:
        tunnel.wait_ready(sleep=sleep)
        client = retry_with_backoff(
            lambda attempt: _open_client(tunnel.engine_url, timeout),
            policy,
            retry_on=CLIENT_ERRORS,
            sleep=sleep,
            describe=f"engine connect {host_name}",
        )
    except RetryExhausted as e:
        tunnel.close()
        reasons = "; ".join(f"attempt {i}: {err}" for i, err in enumerate(e.errors, 1))
        raise EngineConnectionError(
            f"Failed to connect to Docker on {host_name} after {e.attempts} attempts: {reasons}",
            hint=f"Check the host with: boxkeeper host test {host_name}",
        ) from e
    except BaseException:
        tunnel.close()
        raise

    logger.debug("Connected to Docker on %s via %s", host_name, tunnel.engine_url)
    return EngineConnection(client, host_name=host_name, tunnel=tunnel)


def connect(host_name: str | None = None) -> EngineConnection:
    """Connect to a named host, the default host, or the local engine.

    Args:
        host_name: Entry in hosts.json, "local", or None for the configured default.

    Raises:
        HostNotFoundError: The named host is not configured.
        EngineError: The engine is unreachable.
    """
    if host_name == LOCAL_HOST_NAME:
        return connect_local()
    hosts = load_hosts()
    name = host_name or hosts.default_host
    if name is None:
        return connect_local()
    return connect_remote(hosts.get_host(name), name)
