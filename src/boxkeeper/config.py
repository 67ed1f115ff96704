"""Configuration management for boxkeeper.

The configuration lives in ``config.json`` under the config directory. Missing
keys fall back to defaults; unknown keys are rejected so typos never pass
silently.
"""

from __future__ import annotations

import ipaddress
import json
from dataclasses import asdict, dataclass, field, fields

from .constants import (
    DEFAULT_BIND_ADDRESS,
    DEFAULT_COCKPIT_PORT,
    DEFAULT_PORT,
    DEFAULT_STOP_TIMEOUT,
    READINESS_TIMEOUT,
)
from .errors import ConfigError, ValidationError
from .logging import get_logger
from .paths import get_config_dir, get_config_path

logger = get_logger(__name__)

IMAGE_SOURCES = ("prebuilt", "build")
BOOT_MODES = ("user", "system")
LOCAL_BIND_NAMES = frozenset({"localhost", "127.0.0.1", "::1"})


@dataclass
class Config:
    """boxkeeper configuration model."""

    version: int = 1

    # Network
    port: int = DEFAULT_PORT
    bind_address: str = DEFAULT_BIND_ADDRESS

    # Image acquisition when no image is present ("prebuilt" pulls, "build" builds)
    image_source: str = "prebuilt"

    # Authentication: usernames created inside the container
    users: list[str] = field(default_factory=list)
    allow_unauthenticated_network: bool = False

    # Admin console (full init system inside the container)
    cockpit_enabled: bool = False
    cockpit_port: int = DEFAULT_COCKPIT_PORT

    # Container extras
    mounts: list[str] = field(default_factory=list)  # "/host:/container[:ro|rw]"
    container_env: list[str] = field(default_factory=list)  # "KEY=value"

    # Timeouts (seconds)
    readiness_timeout: float = READINESS_TIMEOUT
    stop_timeout: int = DEFAULT_STOP_TIMEOUT

    # Service manager registration
    auto_restart: bool = True
    boot_mode: str = "user"
    restart_retries: int = 3
    restart_delay: int = 5

    def is_network_exposed(self) -> bool:
        """Return True when the service binds to a non-loopback address."""
        if self.bind_address in LOCAL_BIND_NAMES:
            return False
        try:
            return not ipaddress.ip_address(self.bind_address).is_loopback
        except ValueError:
            return True


def config_from_dict(data: dict) -> Config:
    """Build a Config from parsed JSON.

    Raises:
        ConfigError: If the data contains unknown keys or is not an object.
    """
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(
            f"Unknown config key(s): {', '.join(unknown)}",
            hint=f"Edit {get_config_path()} or reset it with: boxkeeper config reset",
        )
    return Config(**data)


def load_config() -> Config:
    """Load configuration from file, or return defaults.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    config_path = get_config_path()

    if not config_path.exists():
        logger.debug("No config at %s, using defaults", config_path)
        return Config()

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(
            f"Failed to load config from {config_path}: {e}",
            hint="Fix the file or reset it with: boxkeeper config reset",
        ) from e

    config = config_from_dict(data)
    validate_config(config)
    return config


def save_config(config: Config) -> None:
    """Save configuration to file."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = get_config_path()
    config_path.write_text(
        json.dumps(asdict(config), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    logger.debug("Saved config to %s", config_path)


def validate_config(config: Config) -> None:
    """Check configuration values.

    Raises:
        ConfigError: On the first invalid value.
    """
    # Local import: mounts depends on docker-py, which config loading should not need
    from .mounts import ParsedMount

    for name in ("port", "cockpit_port"):
        value = getattr(config, name)
        if not isinstance(value, int) or not 1 <= value <= 65535:
            raise ConfigError(f"{name} must be between 1 and 65535, got {value!r}")

    if config.bind_address not in LOCAL_BIND_NAMES:
        try:
            ipaddress.ip_address(config.bind_address)
        except ValueError as e:
            raise ConfigError(f"Invalid bind_address: {config.bind_address!r}") from e

    if config.image_source not in IMAGE_SOURCES:
        raise ConfigError(
            f"image_source must be one of {', '.join(IMAGE_SOURCES)}, got {config.image_source!r}"
        )
    if config.boot_mode not in BOOT_MODES:
        raise ConfigError(
            f"boot_mode must be one of {', '.join(BOOT_MODES)}, got {config.boot_mode!r}"
        )
    for name in ("readiness_timeout", "stop_timeout", "restart_retries", "restart_delay"):
        value = getattr(config, name)
        # bool is an int subclass; a JSON true is not a duration
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{name} must be a number, got {value!r}")
    if config.readiness_timeout <= 0 or config.stop_timeout < 0:
        raise ConfigError("Timeouts must be positive")
    if config.restart_retries < 0 or config.restart_delay < 0:
        raise ConfigError("restart_retries and restart_delay must not be negative")

    for spec in config.mounts:
        try:
            ParsedMount.parse(spec)
        except ValidationError as e:
            raise ConfigError(f"Invalid mount {spec!r}: {e}") from e

    for entry in config.container_env:
        if "=" not in entry or entry.startswith("="):
            raise ConfigError(f"Invalid container_env entry {entry!r}, expected KEY=value")


# Keys `boxkeeper config set` accepts, with their parsers
SETTABLE_KEYS = {
    "port": int,
    "bind_address": str,
    "image_source": str,
    "allow_unauthenticated_network": "bool",
    "cockpit_enabled": "bool",
    "cockpit_port": int,
    "readiness_timeout": float,
    "stop_timeout": int,
    "auto_restart": "bool",
    "boot_mode": str,
    "restart_retries": int,
    "restart_delay": int,
}


def set_config_value(config: Config, key: str, raw: str) -> Config:
    """Set one config key from its string form and validate the result.

    Args:
        config: Current configuration (modified in place).
        key: Config key name.
        raw: Value as typed on the command line.

    Returns:
        The updated configuration.

    Raises:
        ConfigError: Unknown key, unparsable value, or invalid result.
    """
    parser = SETTABLE_KEYS.get(key)
    if parser is None:
        raise ConfigError(
            f"Unknown or read-only config key: {key}",
            hint=f"Settable keys: {', '.join(sorted(SETTABLE_KEYS))}",
        )

    if parser == "bool":
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            value: object = True
        elif lowered in ("0", "false", "no", "off"):
            value = False
        else:
            raise ConfigError(f"{key} expects true/false, got {raw!r}")
    else:
        try:
            value = parser(raw)  # type: ignore[operator]
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {raw!r}") from e

    setattr(config, key, value)
    validate_config(config)
    return config
