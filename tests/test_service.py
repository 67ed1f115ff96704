"""Tests for service orchestration (start/stop/restart/update/status/logs)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from docker.errors import NotFound

from boxkeeper.config import Config
from boxkeeper.constants import VERSION_LABEL
from boxkeeper.errors import (
    ContainerError,
    HealthCheckError,
    NoPreviousImageError,
    ReadinessTimeoutError,
    SecurityGateError,
    ValidationError,
)
from boxkeeper.hosts import HostConfig, HostsFile, save_hosts
from boxkeeper.images import ImageDescriptor, ImageStrategy
from boxkeeper.progress import ProgressReporter
from boxkeeper.readiness import ReadinessState
from boxkeeper.service import (
    HealthResponse,
    StartOptions,
    check_health,
    get_status,
    iter_log_lines,
    parse_started_at,
    restart_service,
    service_url,
    start_service,
    stop_service,
    update_service,
)

RUNNING = {
    "Id": "abc123def456789",
    "State": {"Status": "running", "StartedAt": "2026-01-05T10:00:00.5Z"},
    "Config": {"Image": "boxkeeper:latest"},
    "HostConfig": {"PortBindings": {"3000/tcp": [{"HostIp": "127.0.0.1", "HostPort": "3456"}]}},
}
EXITED = {**RUNNING, "State": {"Status": "exited"}}
PULLED = ImageDescriptor("boxkeeper", "latest", "ghcr.io", True)
USERS = Config(users=["alice"])


@pytest.fixture
def progress() -> ProgressReporter:
    return ProgressReporter(enabled=False)


@pytest.fixture
def steps():
    """Patch the slow or engine-heavy collaborators of start/update."""
    with (
        patch("boxkeeper.service.ensure_image", return_value=PULLED) as ensure,
        patch("boxkeeper.service.wait_ready", return_value=ReadinessState(3)) as ready,
        patch("boxkeeper.service.recreate_users", return_value=[]) as users,
        patch("boxkeeper.container.check_port_available", return_value=True),
    ):
        yield MagicMock(ensure_image=ensure, wait_ready=ready, recreate_users=users)


@pytest.fixture
def fresh_conn(conn: MagicMock) -> MagicMock:
    """No container yet; the image is already present."""
    conn.inspect_image.return_value = {"Id": "sha256:img"}
    conn.api.create_container.return_value = {"Id": "new123"}
    return conn


class TestStartOptions:
    def test_strategy(self) -> None:
        assert StartOptions().image_strategy is None
        assert StartOptions(pull=True).image_strategy is ImageStrategy.PULL
        assert StartOptions(cached_rebuild=True).image_strategy is ImageStrategy.BUILD
        assert StartOptions(full_rebuild=True).image_strategy is ImageStrategy.BUILD_NO_CACHE
        assert StartOptions(pull=True).replaces_container

    def test_from_cli_rejects_two_flags(self) -> None:
        with pytest.raises(ValidationError):
            StartOptions.from_cli(pull=True, cached_rebuild=True)


class TestStartService:
    def test_conflicting_flags_fail_before_engine(self, conn: MagicMock, progress) -> None:
        options = StartOptions(pull=True, full_rebuild=True)
        with pytest.raises(ValidationError):
            start_service(conn, USERS, options, progress)
        conn.verify_connection.assert_not_called()

    def test_already_running_is_noop(self, conn: MagicMock, progress, steps) -> None:
        conn.inspect_container.return_value = RUNNING
        result = start_service(conn, USERS, StartOptions(), progress)
        assert result.already_running is True
        assert result.port == 3456
        assert result.url == "http://127.0.0.1:3456"
        conn.api.create_container.assert_not_called()
        conn.api.start.assert_not_called()
        steps.ensure_image.assert_not_called()

    def test_first_start_creates_and_waits(self, fresh_conn: MagicMock, progress, steps) -> None:
        steps.recreate_users.return_value = ["alice"]
        result = start_service(fresh_conn, USERS, StartOptions(), progress)
        assert result.already_running is False
        assert result.container_id == "new123"
        assert result.users_recreated == ["alice"]
        assert result.url == "http://127.0.0.1:3000"
        fresh_conn.api.start.assert_called_once_with("boxkeeper")
        steps.ensure_image.assert_not_called()
        steps.recreate_users.assert_called_once_with(fresh_conn, ["alice"])
        assert steps.wait_ready.call_args.args[1] == 3000

    def test_missing_image_uses_configured_source(
        self, fresh_conn: MagicMock, progress, steps
    ) -> None:
        config = Config(users=["alice"], image_source="build")
        with patch("boxkeeper.service.image_exists", return_value=False):
            start_service(fresh_conn, config, StartOptions(), progress)
        assert steps.ensure_image.call_args.args[1] is ImageStrategy.BUILD

    def test_security_gate_before_image(self, fresh_conn: MagicMock, progress, steps) -> None:
        with patch("boxkeeper.service.image_exists", return_value=False):
            with pytest.raises(SecurityGateError):
                start_service(fresh_conn, Config(), StartOptions(), progress)
        steps.ensure_image.assert_not_called()
        fresh_conn.api.create_container.assert_not_called()

    def test_port_option_overrides_config(self, fresh_conn: MagicMock, progress, steps) -> None:
        result = start_service(fresh_conn, USERS, StartOptions(port=8080), progress)
        assert result.port == 8080
        host_kwargs = fresh_conn.api.create_host_config.call_args.kwargs
        assert host_kwargs["port_bindings"][3000] == ("127.0.0.1", 8080)

    def test_pull_replaces_running_container(self, conn: MagicMock, progress, steps) -> None:
        conn.inspect_container.side_effect = [RUNNING, RUNNING, None]
        conn.inspect_image.return_value = {"Id": "sha256:img"}
        conn.api.create_container.return_value = {"Id": "new123"}

        result = start_service(conn, USERS, StartOptions(pull=True), progress)

        conn.api.stop.assert_called_once()
        conn.api.remove_container.assert_called_once_with("boxkeeper", force=True, v=False)
        assert steps.ensure_image.call_args.args[1] is ImageStrategy.PULL
        assert result.container_id == "new123"
        assert result.image == PULLED

    @pytest.mark.parametrize(
        "options",
        [
            StartOptions(pull=True),
            StartOptions(cached_rebuild=True),
            StartOptions(full_rebuild=True),
        ],
    )
    def test_gate_refuses_before_replacing_running_container(
        self, conn: MagicMock, progress, steps, options: StartOptions
    ) -> None:
        conn.inspect_container.return_value = RUNNING
        with pytest.raises(SecurityGateError):
            start_service(conn, Config(), options, progress)
        conn.api.stop.assert_not_called()
        conn.api.remove_container.assert_not_called()
        steps.ensure_image.assert_not_called()

    def test_stopped_container_is_restarted_on_its_port(
        self, conn: MagicMock, progress, steps
    ) -> None:
        conn.inspect_container.return_value = EXITED
        conn.inspect_image.return_value = {"Id": "sha256:img"}
        result = start_service(conn, USERS, StartOptions(), progress)
        conn.api.create_container.assert_not_called()
        conn.api.start.assert_called_once_with("boxkeeper")
        steps.recreate_users.assert_not_called()
        assert result.port == 3456

    def test_readiness_failure_carries_logs(self, fresh_conn: MagicMock, progress, steps) -> None:
        steps.wait_ready.side_effect = ReadinessTimeoutError(60)
        fresh_conn.container_logs.return_value = ["listen EADDRINUSE"]
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            start_service(fresh_conn, USERS, StartOptions(), progress)
        assert exc_info.value.log_tail == ["listen EADDRINUSE"]


class TestStopService:
    def test_idempotent(self, conn: MagicMock) -> None:
        assert stop_service(conn).already_stopped is True
        assert stop_service(conn).already_stopped is True
        conn.api.stop.assert_not_called()

    def test_remove(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING
        stop_service(conn, 5, remove=True)
        conn.api.stop.assert_called_once_with("boxkeeper", timeout=5)
        conn.api.remove_container.assert_called_once_with("boxkeeper", force=False, v=False)


class TestRestartService:
    def test_stops_then_starts(self, conn: MagicMock, progress, steps) -> None:
        conn.inspect_container.side_effect = [RUNNING, RUNNING, EXITED]
        conn.inspect_image.return_value = {"Id": "sha256:img"}
        result = restart_service(conn, USERS, progress)
        conn.api.stop.assert_called_once()
        conn.api.start.assert_called_once_with("boxkeeper")
        assert result.already_running is False


class TestUpdateService:
    def test_rollback_without_previous_touches_nothing(self, conn: MagicMock, progress) -> None:
        conn.inspect_container.return_value = RUNNING
        with pytest.raises(NoPreviousImageError):
            update_service(conn, USERS, progress, rollback=True)
        conn.api.stop.assert_not_called()
        conn.api.remove_container.assert_not_called()

    def test_gate_refuses_before_touching_running_service(
        self, conn: MagicMock, progress, steps
    ) -> None:
        conn.inspect_container.return_value = RUNNING
        with pytest.raises(SecurityGateError):
            update_service(conn, Config(), progress)
        conn.api.stop.assert_not_called()
        conn.api.remove_container.assert_not_called()
        steps.ensure_image.assert_not_called()

    def test_update_recreates_container(self, conn: MagicMock, progress, steps) -> None:
        conn.inspect_container.side_effect = [RUNNING, None]
        conn.inspect_image.return_value = {"Id": "sha256:img"}
        conn.api.create_container.return_value = {"Id": "new123"}
        steps.recreate_users.return_value = ["alice"]

        result = update_service(conn, USERS, progress)

        assert steps.ensure_image.call_args.args[1] is ImageStrategy.UPDATE
        conn.api.remove_container.assert_called_once()
        conn.api.start.assert_called_once()
        assert result.rolled_back is False
        assert result.passwords_reset is True

    def test_rollback_strategy(self, conn: MagicMock, progress, steps) -> None:
        conn.inspect_container.side_effect = [RUNNING, None]
        conn.inspect_image.return_value = {"Id": "sha256:prev"}
        conn.api.create_container.return_value = {"Id": "new123"}
        result = update_service(conn, USERS, progress, rollback=True)
        assert steps.ensure_image.call_args.args[1] is ImageStrategy.ROLLBACK
        assert result.rolled_back is True


class TestLogs:
    def test_snapshot(self, conn: MagicMock) -> None:
        conn.api.logs.return_value = b"one\ntwo\n"
        assert list(iter_log_lines(conn, 50)) == ["one", "two"]
        assert conn.api.logs.call_args.kwargs["tail"] == 50

    def test_follow_joins_partial_chunks(self, conn: MagicMock) -> None:
        conn.api.logs.return_value = iter([b"he", b"llo\nwor", b"ld\n", b"tail"])
        assert list(iter_log_lines(conn, 0, follow=True)) == ["hello", "world", "tail"]
        assert conn.api.logs.call_args.kwargs["follow"] is True

    def test_missing_container(self, conn: MagicMock) -> None:
        conn.api.logs.side_effect = NotFound("no such container")
        with pytest.raises(ContainerError, match="does not exist"):
            list(iter_log_lines(conn, 50))


class TestHealth:
    def test_healthy(self) -> None:
        response = MagicMock(status_code=200)
        response.json.return_value = {"healthy": True, "version": "1.0.3"}
        with patch("boxkeeper.service.requests.get", return_value=response) as get:
            assert check_health(3000) == HealthResponse(True, "1.0.3")
        assert get.call_args.args[0] == "http://127.0.0.1:3000/global/health"

    def test_refused(self) -> None:
        with patch("boxkeeper.service.requests.get", side_effect=requests.ConnectionError()):
            with pytest.raises(HealthCheckError, match="Connection refused"):
                check_health(3000)

    def test_timeout(self) -> None:
        with patch("boxkeeper.service.requests.get", side_effect=requests.Timeout()):
            with pytest.raises(HealthCheckError, match="Timeout"):
                check_health(3000)

    def test_http_error(self) -> None:
        with patch("boxkeeper.service.requests.get", return_value=MagicMock(status_code=503)):
            with pytest.raises(HealthCheckError, match="503"):
                check_health(3000)


class TestStatus:
    def test_parse_started_at(self) -> None:
        parsed = parse_started_at("2026-01-05T10:00:00.123456789Z")
        assert parsed == datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)
        assert parse_started_at("0001-01-01T00:00:00Z") is None
        assert parse_started_at(None) is None

    def test_running_status(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING
        started = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)
        status = get_status(
            conn,
            USERS,
            health=lambda port, host: HealthResponse(True, "1.0"),
            now=lambda: started + timedelta(minutes=5),
        )
        assert status.is_running
        assert status.url == "http://127.0.0.1:3456"
        assert status.uptime == pytest.approx(300)
        assert status.health == HealthResponse(True, "1.0")
        assert status.users == ["alice"]
        assert status.network_exposed is False

    def test_health_failure_is_reported_not_raised(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING

        def unhealthy(port: int, host: str) -> HealthResponse:
            raise HealthCheckError("Timeout - service may be starting")

        status = get_status(conn, USERS, health=unhealthy)
        assert status.health is None
        assert status.health_error == "Timeout - service may be starting"

    def test_quiet_status_skips_health_check(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING
        status = get_status(conn, USERS, health=None)
        assert status.is_running
        assert status.url == "http://127.0.0.1:3456"
        assert status.health is None
        assert status.health_error is None

    def test_image_version_mismatch(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING
        conn.inspect_image.return_value = {"Config": {"Labels": {VERSION_LABEL: "0.0.1"}}}
        status = get_status(conn, USERS, health=None)
        conn.inspect_image.assert_called_with("boxkeeper:latest")
        assert status.image_version == "0.0.1"
        assert status.version_mismatch

    def test_image_without_label_is_compatible(self, conn: MagicMock) -> None:
        conn.inspect_container.return_value = RUNNING
        conn.inspect_image.return_value = {"Config": {"Labels": None}}
        status = get_status(conn, USERS, health=None)
        assert status.image_version is None
        assert not status.version_mismatch

    def test_absent(self, conn: MagicMock) -> None:
        status = get_status(conn, Config(bind_address="0.0.0.0"))
        assert status.is_running is False
        assert status.url is None
        assert status.network_exposed is True


class TestServiceUrl:
    def test_wildcard_bind_maps_to_loopback(self, conn: MagicMock) -> None:
        assert service_url(conn, Config(bind_address="0.0.0.0"), 3000) == "http://127.0.0.1:3000"

    def test_ipv6(self, conn: MagicMock) -> None:
        assert service_url(conn, Config(bind_address="::1"), 3000) == "http://[::1]:3000"

    def test_remote_uses_hostname(self, conn: MagicMock) -> None:
        save_hosts(HostsFile(hosts={"prod": HostConfig("prod.example.com", user="u")}))
        conn.is_remote = True
        conn.host_name = "prod"
        assert service_url(conn, Config(), 3000) == "http://prod.example.com:3000"
