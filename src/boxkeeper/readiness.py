"""Readiness monitor for a freshly started service.

The service counts as ready once its port has accepted
READINESS_REQUIRED_SUCCESSES TCP connections in a row; a single refused
connection resets the count, so a process that binds and then crashes is not
mistaken for a healthy one. While waiting, the container logs are scanned for
lines that mean the service will never come up.
"""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Callable

from .constants import (
    CONTAINER_NAME,
    FATAL_LOG_PATTERNS,
    READINESS_CONNECT_TIMEOUT,
    READINESS_LOG_INTERVAL,
    READINESS_LOG_TAIL,
    READINESS_POLL_INTERVAL,
    READINESS_REQUIRED_SUCCESSES,
    READINESS_TIMEOUT,
)
from .engine import EngineConnection
from .errors import FatalLogError, ReadinessTimeoutError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReadinessState:
    """Progress of one wait; discarded when the wait ends."""

    consecutive_successes: int = 0
    elapsed: float = 0.0
    fatal_line: str | None = None
    last_log_check: float | None = None


def tcp_probe(host: str, port: int, timeout: float = READINESS_CONNECT_TIMEOUT) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def find_fatal_line(lines: list[str]) -> str | None:
    """First log line matching a fatal pattern (case-insensitive), if any."""
    for line in lines:
        lowered = line.lower()
        if any(pattern in lowered for pattern in FATAL_LOG_PATTERNS):
            return line.strip()
    return None


def wait_ready(
    conn: EngineConnection,
    port: int,
    timeout: float = READINESS_TIMEOUT,
    *,
    host: str = "127.0.0.1",
    container: str = CONTAINER_NAME,
    poll_interval: float = READINESS_POLL_INTERVAL,
    log_interval: float = READINESS_LOG_INTERVAL,
    required_successes: int = READINESS_REQUIRED_SUCCESSES,
    probe: Callable[[str, int], bool] = tcp_probe,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ReadinessState:
    """Block until the service is ready.

    Args:
        conn: Engine connection, used to read container logs.
        port: Host port the service is published on.
        timeout: Overall deadline in seconds.
        host: Address to probe.
        container: Container whose logs are scanned.
        poll_interval: Seconds between probes.
        log_interval: Minimum seconds between log scans.
        required_successes: Consecutive successful probes needed.
        probe: Connectivity check (injectable for tests).
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        The final state.

    Raises:
        FatalLogError: A fatal pattern appeared in the logs.
        ReadinessTimeoutError: The deadline passed first.
    """
    state = ReadinessState()
    started = clock()
    logger.debug("Waiting for %s:%d (timeout %.0fs)", host, port, timeout)

    while True:
        now = clock()
        state.elapsed = now - started
        if state.elapsed >= timeout:
            raise ReadinessTimeoutError(timeout)

        if state.last_log_check is None or now - state.last_log_check >= log_interval:
            state.last_log_check = now
            line = find_fatal_line(conn.container_logs(container, READINESS_LOG_TAIL))
            if line is not None:
                state.fatal_line = line
                raise FatalLogError(line)

        if probe(host, port):
            state.consecutive_successes += 1
            logger.debug(
                "Probe ok (%d/%d)", state.consecutive_successes, required_successes
            )
            if state.consecutive_successes >= required_successes:
                logger.debug("Service ready after %.1fs", state.elapsed)
                return state
        else:
            state.consecutive_successes = 0

        sleep(poll_interval)
