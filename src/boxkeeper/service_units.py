"""Run boxkeeper at login or boot through the platform service manager.

Platform support:
- Linux: systemd unit (user or system), ``systemctl [--user]``
- macOS: launchd plist (LaunchAgent or LaunchDaemon), ``launchctl bootstrap``

The unit runs ``boxkeeper start --no-daemon`` and lets the service manager
restart it on failure, bounded by restart_retries and restart_delay.
"""

from __future__ import annotations

import os
import plistlib
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .config import Config
from .errors import ServiceInstallError
from .logging import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "boxkeeper"
LAUNCHD_LABEL = "org.boxkeeper.service"
COMMAND_TIMEOUT = 30


@dataclass(frozen=True)
class ServiceConfig:
    """What the installed unit runs and how it is restarted."""

    executable_path: str
    restart_retries: int = 3
    restart_delay: int = 5
    boot_mode: str = "user"
    auto_restart: bool = True

    @classmethod
    def from_config(cls, config: Config, executable_path: str) -> ServiceConfig:
        return cls(
            executable_path=executable_path,
            restart_retries=config.restart_retries,
            restart_delay=config.restart_delay,
            boot_mode=config.boot_mode,
            auto_restart=config.auto_restart,
        )


@dataclass(frozen=True)
class InstallResult:
    service_file_path: Path
    service_name: str
    started: bool
    requires_root: bool


def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    logger.debug("Running: %s", " ".join(cmd))
    try:
        return subprocess.run(
            cmd, capture_output=True, text=True, check=False, timeout=COMMAND_TIMEOUT
        )
    except FileNotFoundError as e:
        raise ServiceInstallError(f"{cmd[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise ServiceInstallError(f"{cmd[0]} timed out after {COMMAND_TIMEOUT}s") from e


def _quote_exec(path: str) -> str:
    return f'"{path}"' if " " in path else path


class ServiceManager(ABC):
    """Platform service manager for the boxkeeper unit."""

    service_name = SERVICE_NAME

    def __init__(self, boot_mode: str = "user") -> None:
        self.user_mode = boot_mode != "system"

    @property
    @abstractmethod
    def service_dir(self) -> Path: ...

    @property
    @abstractmethod
    def service_file_path(self) -> Path: ...

    @abstractmethod
    def render(self, config: ServiceConfig) -> str:
        """Unit file text for this platform."""

    @abstractmethod
    def install(self, config: ServiceConfig) -> InstallResult:
        """Write the unit, register it and start it."""

    @abstractmethod
    def uninstall(self) -> None:
        """Stop the unit and remove its file."""

    def is_installed(self) -> bool:
        return self.service_file_path.exists()

    def _write_unit(self, content: str) -> Path:
        try:
            self.service_dir.mkdir(parents=True, exist_ok=True)
            self.service_file_path.write_text(content, encoding="utf-8")
        except PermissionError as e:
            raise ServiceInstallError(
                f"Cannot write {self.service_file_path}: permission denied",
                hint="Run with sudo, or use: boxkeeper config set boot_mode user",
            ) from e
        except OSError as e:
            raise ServiceInstallError(f"Cannot write {self.service_file_path}: {e}") from e
        return self.service_file_path


class SystemdManager(ServiceManager):
    """systemd unit under ~/.config/systemd/user or /etc/systemd/system."""

    @property
    def service_dir(self) -> Path:
        if self.user_mode:
            return Path.home() / ".config" / "systemd" / "user"
        return Path("/etc/systemd/system")

    @property
    def service_file_path(self) -> Path:
        return self.service_dir / f"{SERVICE_NAME}.service"

    def render(self, config: ServiceConfig) -> str:
        exe = _quote_exec(config.executable_path)
        start_limit_interval = config.restart_delay * config.restart_retries * 2
        return f"""[Unit]
Description=boxkeeper container service
After=docker.service
Wants=docker.service

[Service]
Type=simple
ExecStart={exe} start --no-daemon
ExecStop={exe} stop
Restart={"on-failure" if config.auto_restart else "no"}
RestartSec={config.restart_delay}s
StartLimitBurst={config.restart_retries}
StartLimitIntervalSec={start_limit_interval}

[Install]
WantedBy={"default.target" if self.user_mode else "multi-user.target"}
"""

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = ["systemctl"]
        if self.user_mode:
            cmd.append("--user")
        return _run([*cmd, *args])

    def _systemctl_ok(self, *args: str) -> None:
        result = self._systemctl(*args)
        if result.returncode != 0:
            raise ServiceInstallError(
                f"systemctl {' '.join(args)} failed: {result.stderr.strip()}"
            )

    def install(self, config: ServiceConfig) -> InstallResult:
        path = self._write_unit(self.render(config))
        self._systemctl_ok("daemon-reload")
        self._systemctl_ok("enable", SERVICE_NAME)
        started = self._systemctl("start", SERVICE_NAME).returncode == 0
        logger.debug("Installed %s (started=%s)", path, started)
        return InstallResult(
            service_file_path=path,
            service_name=SERVICE_NAME,
            started=started,
            requires_root=not self.user_mode,
        )

    def uninstall(self) -> None:
        # Either may fail when the unit is already stopped or disabled
        self._systemctl("stop", SERVICE_NAME)
        self._systemctl("disable", SERVICE_NAME)
        if self.service_file_path.exists():
            try:
                self.service_file_path.unlink()
            except OSError as e:
                raise ServiceInstallError(f"Cannot remove {self.service_file_path}: {e}") from e
        self._systemctl_ok("daemon-reload")


class LaunchdManager(ServiceManager):
    """launchd job in ~/Library/LaunchAgents or /Library/LaunchDaemons."""

    service_name = LAUNCHD_LABEL

    @property
    def service_dir(self) -> Path:
        if self.user_mode:
            return Path.home() / "Library" / "LaunchAgents"
        return Path("/Library/LaunchDaemons")

    @property
    def service_file_path(self) -> Path:
        return self.service_dir / f"{LAUNCHD_LABEL}.plist"

    def _log_path(self, stream: str) -> str:
        return str(Path.home() / "Library" / "Logs" / f"boxkeeper.{stream}.log")

    def render(self, config: ServiceConfig) -> str:
        plist = {
            "Label": LAUNCHD_LABEL,
            "ProgramArguments": [config.executable_path, "start", "--no-daemon"],
            "RunAtLoad": True,
            "ThrottleInterval": config.restart_delay,
            "StandardOutPath": self._log_path("stdout"),
            "StandardErrorPath": self._log_path("stderr"),
        }
        if config.auto_restart:
            plist["KeepAlive"] = {"SuccessfulExit": False, "Crashed": True}
        return plistlib.dumps(plist).decode("utf-8")

    def _domain(self) -> str:
        return f"gui/{os.getuid()}" if self.user_mode else "system"

    def _bootout(self) -> None:
        _run(["launchctl", "bootout", f"{self._domain()}/{LAUNCHD_LABEL}"])

    def install(self, config: ServiceConfig) -> InstallResult:
        if not self.user_mode and os.geteuid() != 0:
            raise ServiceInstallError(
                "System-level installation requires root", hint="Run with sudo"
            )
        if self.service_file_path.exists():
            self._bootout()
        path = self._write_unit(self.render(config))
        result = _run(["launchctl", "bootstrap", self._domain(), str(path)])
        if result.returncode != 0 and "already loaded" not in result.stderr:
            raise ServiceInstallError(f"Failed to bootstrap service: {result.stderr.strip()}")
        return InstallResult(
            service_file_path=path,
            service_name=LAUNCHD_LABEL,
            started=True,
            requires_root=not self.user_mode,
        )

    def uninstall(self) -> None:
        self._bootout()
        if self.service_file_path.exists():
            try:
                self.service_file_path.unlink()
            except OSError as e:
                raise ServiceInstallError(f"Cannot remove {self.service_file_path}: {e}") from e


def systemd_available() -> bool:
    return Path("/run/systemd/system").exists()


def get_service_manager(boot_mode: str = "user") -> ServiceManager:
    """Service manager for the current platform.

    Raises:
        ServiceInstallError: Unsupported platform, or Linux without systemd.
    """
    if sys.platform == "darwin":
        return LaunchdManager(boot_mode)
    if sys.platform.startswith("linux"):
        if not systemd_available():
            raise ServiceInstallError(
                "systemd is not available on this system",
                hint="Service registration requires systemd as the init system",
            )
        return SystemdManager(boot_mode)
    raise ServiceInstallError(f"Service registration is not supported on {sys.platform}")
