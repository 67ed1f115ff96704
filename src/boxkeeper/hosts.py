"""Remote host definitions and their storage in hosts.json.

A remote host is reached over SSH; the engine socket on that host is forwarded
to a local port by :mod:`boxkeeper.tunnel`.
"""

from __future__ import annotations

import getpass
import json
from dataclasses import asdict, dataclass, field

from .errors import ConfigError, HostExistsError, HostNotFoundError
from .logging import get_logger
from .paths import get_config_dir, get_hosts_path

logger = get_logger(__name__)


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "root"


@dataclass
class HostConfig:
    """SSH connection parameters for one remote host."""

    hostname: str
    user: str = field(default_factory=_default_user)
    port: int | None = None
    identity_file: str | None = None
    jump_host: str | None = None
    groups: list[str] = field(default_factory=list)
    description: str | None = None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}"

    def ssh_args(self) -> list[str]:
        """Connection options followed by the user@host target."""
        args: list[str] = []
        if self.jump_host:
            args += ["-J", self.jump_host]
        if self.identity_file:
            args += ["-i", self.identity_file]
        if self.port is not None:
            args += ["-p", str(self.port)]
        args.append(self.target)
        return args

    def format_ssh_command(self) -> str:
        """Human-readable ssh command, omitting the default port."""
        parts = ["ssh"]
        if self.port is not None and self.port != 22:
            parts.append(f"-p {self.port}")
        if self.identity_file:
            parts.append(f"-i {self.identity_file}")
        if self.jump_host:
            parts.append(f"-J {self.jump_host}")
        parts.append(self.target)
        return " ".join(parts)


@dataclass
class HostsFile:
    """Root structure of hosts.json."""

    version: int = 1
    default_host: str | None = None
    hosts: dict[str, HostConfig] = field(default_factory=dict)

    def add_host(self, name: str, host: HostConfig) -> None:
        if name in self.hosts:
            raise HostExistsError(name)
        self.hosts[name] = host

    def remove_host(self, name: str) -> HostConfig:
        try:
            host = self.hosts.pop(name)
        except KeyError:
            raise HostNotFoundError(name) from None
        if self.default_host == name:
            self.default_host = None
        return host

    def get_host(self, name: str) -> HostConfig:
        try:
            return self.hosts[name]
        except KeyError:
            raise HostNotFoundError(name) from None

    def set_default(self, name: str | None) -> None:
        if name is not None and name not in self.hosts:
            raise HostNotFoundError(name)
        self.default_host = name

    def host_names(self) -> list[str]:
        return sorted(self.hosts)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "default_host": self.default_host,
            "hosts": {name: asdict(host) for name, host in sorted(self.hosts.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> HostsFile:
        try:
            hosts = {name: HostConfig(**entry) for name, entry in data.get("hosts", {}).items()}
            return cls(
                version=data.get("version", 1),
                default_host=data.get("default_host"),
                hosts=hosts,
            )
        except (TypeError, AttributeError) as e:
            raise ConfigError(f"Invalid hosts file: {e}") from e


def load_hosts() -> HostsFile:
    """Load hosts.json, or return an empty hosts file.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    path = get_hosts_path()
    if not path.exists():
        return HostsFile()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Failed to load hosts from {path}: {e}") from e
    return HostsFile.from_dict(data)


def save_hosts(hosts: HostsFile) -> None:
    """Write hosts.json."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    path = get_hosts_path()
    path.write_text(json.dumps(hosts.to_dict(), indent=2) + "\n", encoding="utf-8")
    logger.debug("Saved %d host(s) to %s", len(hosts.hosts), path)
