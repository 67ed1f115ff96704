"""SSH tunnel management for remote Docker engines.

A remote engine is reached by forwarding its UNIX socket to a local TCP port
with ``ssh -L``. The ssh client runs as a child process for the lifetime of the
tunnel; closing the tunnel (explicitly, on context exit, or when the object is
collected) kills and reaps it.

Usage:
    with SshTunnel.open(host, "prod") as tunnel:
        tunnel.wait_ready()
        client = docker.DockerClient(base_url=tunnel.engine_url)
"""

from __future__ import annotations

import contextlib
import socket
import subprocess
import tempfile
import time
from typing import IO, Any, Callable

from .constants import (
    REMOTE_ENGINE_SOCKET,
    SSH_CONNECT_TIMEOUT,
    SSH_TEST_TIMEOUT,
    TUNNEL_PROBE_TIMEOUT,
)
from .errors import (
    RemoteEngineUnavailableError,
    SshAuthError,
    SshConnectionError,
    SshSpawnError,
    TunnelTimeoutError,
)
from .hosts import HostConfig
from .logging import get_logger
from .retry import TUNNEL_READY, RetryExhausted, RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

ERR_SSH_NOT_FOUND = "SSH not found"
HINT_SSH_NOT_FOUND = "Install the OpenSSH client"


def find_available_port() -> int:
    """Ask the OS for a free local TCP port.

    The port is released before ssh binds it, so another process could take it
    in between. That window is accepted.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def build_tunnel_command(host: HostConfig, local_port: int) -> list[str]:
    """Build the ssh command forwarding the remote engine socket."""
    return [
        "ssh",
        "-L",
        f"{local_port}:{REMOTE_ENGINE_SOCKET}",
        "-N",
        "-o",
        "BatchMode=yes",
        "-o",
        "StrictHostKeyChecking=accept-new",
        "-o",
        f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        "-o",
        "RequestTTY=no",
        *host.ssh_args(),
    ]


class SshTunnel:
    """A running ``ssh -L`` process forwarding a remote engine socket.

    The tunnel is released when:
    1. The context exits normally
    2. The context exits via exception
    3. close() is called explicitly
    4. The object is garbage collected
    """

    def __init__(
        self,
        process: subprocess.Popen,
        local_port: int,
        host_name: str,
        stderr_log: IO[bytes] | None = None,
    ) -> None:
        self._process = process
        self._stderr_log = stderr_log
        self.local_port = local_port
        self.host_name = host_name
        self._closed = False

    @classmethod
    def open(cls, host: HostConfig, host_name: str) -> SshTunnel:
        """Spawn the ssh forwarder for ``host``.

        Args:
            host: Connection parameters.
            host_name: Name of the host entry (for messages).

        Returns:
            The tunnel. Call wait_ready() before using it.

        Raises:
            SshSpawnError: If ssh cannot be started.
        """
        local_port = find_available_port()
        cmd = build_tunnel_command(host, local_port)
        logger.debug("Starting SSH tunnel to %s: %s", host_name, " ".join(cmd))
        # A file, not a pipe: nobody reads while ssh runs, and a full pipe would block it
        stderr_log = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr_log,
            )
        except FileNotFoundError as e:
            stderr_log.close()
            raise SshSpawnError(ERR_SSH_NOT_FOUND, hint=HINT_SSH_NOT_FOUND) from e
        except OSError as e:
            stderr_log.close()
            raise SshSpawnError(f"Failed to start ssh: {e}") from e

        logger.debug(
            "SSH tunnel to %s on local port %d (PID %d)", host_name, local_port, process.pid
        )
        return cls(process, local_port, host_name, stderr_log)

    @property
    def engine_url(self) -> str:
        return f"tcp://127.0.0.1:{self.local_port}"

    @property
    def pid(self) -> int:
        return self._process.pid

    def is_alive(self) -> bool:
        """True while the ssh process is running."""
        return not self._closed and self._process.poll() is None

    def _stderr_text(self) -> str:
        """Everything ssh wrote to stderr so far."""
        if self._stderr_log is None:
            return ""
        with contextlib.suppress(OSError, ValueError):
            self._stderr_log.seek(0)
            return self._stderr_log.read().decode("utf-8", errors="replace").strip()
        return ""

    def _probe(self, attempt: int) -> None:
        if self._process.poll() is not None:
            detail = self._stderr_text() or f"exit code {self._process.returncode}"
            raise SshConnectionError(
                f"SSH tunnel to {self.host_name} exited: {detail}",
                hint=f"Check the host with: boxkeeper host test {self.host_name}",
            )
        address = ("127.0.0.1", self.local_port)
        with socket.create_connection(address, timeout=TUNNEL_PROBE_TIMEOUT):
            pass

    def wait_ready(
        self,
        policy: RetryPolicy = TUNNEL_READY,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wait until the forwarded port accepts TCP connections.

        Raises:
            TunnelTimeoutError: No attempt connected.
            SshConnectionError: The ssh process exited while waiting.
        """
        try:
            retry_with_backoff(
                self._probe,
                policy,
                retry_on=(OSError,),
                sleep=sleep,
                describe=f"tunnel {self.host_name}",
            )
        except RetryExhausted as e:
            logger.debug("ssh stderr for %s: %s", self.host_name, self._stderr_text() or "(empty)")
            raise TunnelTimeoutError(e.attempts, str(e.last_error or "")) from e
        logger.debug("SSH tunnel to %s is ready", self.host_name)

    def close(self) -> None:
        """Kill and reap the ssh process. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._process.poll() is None:
            with contextlib.suppress(OSError):
                self._process.kill()
        with contextlib.suppress(OSError, subprocess.TimeoutExpired):
            self._process.wait(timeout=5)
        if self._stderr_log is not None:
            with contextlib.suppress(OSError):
                self._stderr_log.close()
        logger.debug("Closed SSH tunnel to %s", self.host_name)

    def __enter__(self) -> SshTunnel:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def __del__(self) -> None:
        with contextlib.suppress(Exception):
            self.close()


def check_host_connection(host: HostConfig) -> str:
    """Check SSH access and Docker availability on a remote host.

    Args:
        host: Connection parameters.

    Returns:
        The remote Docker server version.

    Raises:
        SshSpawnError: ssh is not installed.
        SshAuthError: Authentication or host key verification failed.
        RemoteEngineUnavailableError: Docker is missing on the remote host.
        SshConnectionError: Any other failure.
    """
    cmd = [
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        "-o",
        "StrictHostKeyChecking=accept-new",
        *host.ssh_args(),
        "docker",
        "version",
        "--format",
        "{{.Server.Version}}",
    ]
    logger.debug("Testing SSH connection: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            check=False,
            timeout=SSH_TEST_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise SshSpawnError(ERR_SSH_NOT_FOUND, hint=HINT_SSH_NOT_FOUND) from e
    except subprocess.TimeoutExpired as e:
        raise SshConnectionError(
            f"SSH connection to {host.hostname} timed out after {SSH_TEST_TIMEOUT}s"
        ) from e

    if result.returncode == 0:
        version = result.stdout.strip()
        logger.info("Docker version on %s: %s", host.hostname, version)
        return version

    stderr = result.stderr.strip()
    if "Permission denied" in stderr or "Host key verification failed" in stderr:
        key = host.identity_file or "~/.ssh/id_rsa"
        raise SshAuthError(
            f"SSH authentication to {host.target} failed",
            hint=f"Load your key with: ssh-add {key}",
        )
    if "command not found" in stderr or "not found" in stderr:
        raise RemoteEngineUnavailableError(
            f"Docker is not installed on {host.hostname}",
            hint="Install Docker on the remote host",
        )
    raise SshConnectionError(f"SSH connection to {host.target} failed: {stderr}")
