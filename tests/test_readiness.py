"""Tests for the readiness monitor."""

from __future__ import annotations

import socket
from unittest.mock import MagicMock

import pytest

from conftest import FakeClock

from boxkeeper.errors import FatalLogError, ReadinessTimeoutError
from boxkeeper.readiness import find_fatal_line, tcp_probe, wait_ready


def _scripted_probe(results: list[bool]):
    calls: list[bool] = []

    def probe(host: str, port: int) -> bool:
        result = results[len(calls)] if len(calls) < len(results) else results[-1]
        calls.append(result)
        return result

    probe.calls = calls  # type: ignore[attr-defined]
    return probe


class TestFindFatalLine:
    def test_case_insensitive(self) -> None:
        lines = ["booting", "  Failed to execute /sbin/init: No such device  "]
        assert find_fatal_line(lines) == "Failed to execute /sbin/init: No such device"

    def test_clean_logs(self) -> None:
        assert find_fatal_line(["listening on 0.0.0.0:3000"]) is None


class TestTcpProbe:
    def test_listening_socket(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            assert tcp_probe("127.0.0.1", server.getsockname()[1], timeout=1.0) is True

    def test_closed_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        assert tcp_probe("127.0.0.1", port, timeout=0.5) is False


class TestWaitReady:
    def test_three_consecutive_successes(self, conn: MagicMock, clock: FakeClock) -> None:
        probe = _scripted_probe([True, True, True])
        state = wait_ready(conn, 3000, 10, probe=probe, clock=clock, sleep=clock.sleep)
        assert state.consecutive_successes == 3
        assert probe.calls == [True, True, True]

    def test_failure_resets_count(self, conn: MagicMock, clock: FakeClock) -> None:
        probe = _scripted_probe([True, True, False, True, True, True])
        state = wait_ready(conn, 3000, 10, probe=probe, clock=clock, sleep=clock.sleep)
        assert len(probe.calls) == 6
        assert state.consecutive_successes == 3

    def test_flapping_never_ready(self, conn: MagicMock, clock: FakeClock) -> None:
        probe = _scripted_probe([True, True, False] * 100)
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            wait_ready(conn, 3000, 5, probe=probe, clock=clock, sleep=clock.sleep)
        assert exc_info.value.timeout == 5

    def test_timeout(self, conn: MagicMock, clock: FakeClock) -> None:
        probe = _scripted_probe([False])
        with pytest.raises(ReadinessTimeoutError, match="within 3s"):
            wait_ready(conn, 3000, 3, probe=probe, clock=clock, sleep=clock.sleep)
        assert clock.now == pytest.approx(3.0)

    def test_fatal_log_aborts_before_deadline(self, conn: MagicMock, clock: FakeClock) -> None:
        conn.container_logs.side_effect = [
            ["starting"],
            ["starting", "systemd: exec failed: permission denied"],
        ]
        probe = _scripted_probe([False])
        with pytest.raises(FatalLogError) as exc_info:
            wait_ready(conn, 3000, 60, probe=probe, clock=clock, sleep=clock.sleep)
        assert exc_info.value.line == "systemd: exec failed: permission denied"
        assert clock.now < 60

    def test_logs_scanned_at_log_interval(self, conn: MagicMock, clock: FakeClock) -> None:
        probe = _scripted_probe([False])
        with pytest.raises(ReadinessTimeoutError):
            wait_ready(
                conn,
                3000,
                5,
                probe=probe,
                clock=clock,
                sleep=clock.sleep,
                poll_interval=0.5,
                log_interval=1.0,
            )
        # once per second over five seconds of 0.5s polls
        assert conn.container_logs.call_count == 5

    def test_probes_given_host(self, conn: MagicMock, clock: FakeClock) -> None:
        seen: list[tuple[str, int]] = []

        def probe(host: str, port: int) -> bool:
            seen.append((host, port))
            return True

        wait_ready(conn, 8080, 10, host="10.0.0.5", probe=probe, clock=clock, sleep=clock.sleep)
        assert set(seen) == {("10.0.0.5", 8080)}
