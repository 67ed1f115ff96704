"""Filesystem locations and Docker mount path conversion.

boxkeeper keeps user configuration (config.json, hosts.json) in the config
directory and runtime state (PID lock, image provenance) in the data directory.
Both follow the XDG layout and can be overridden with environment variables,
which the tests rely on.

Bind-mount host paths are converted for Docker Desktop, which expects
POSIX-style paths: /c/Users/... (not C:\\Users\\...)
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from .constants import CONFIG_FILE, HOSTS_FILE, PID_FILE, PROVENANCE_FILE

CONFIG_DIR_ENV = "BOXKEEPER_CONFIG_DIR"
DATA_DIR_ENV = "BOXKEEPER_DATA_DIR"


def get_config_dir() -> Path:
    """Get the boxkeeper configuration directory."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "boxkeeper"


def get_data_dir() -> Path:
    """Get the boxkeeper data directory (PID file, image state)."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "boxkeeper"


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / CONFIG_FILE


def get_hosts_path() -> Path:
    """Get the path to the remote hosts file."""
    return get_config_dir() / HOSTS_FILE


def get_pid_path() -> Path:
    """Get the path of the instance lock file."""
    return get_data_dir() / PID_FILE


def get_provenance_path(host_name: str | None = None, *, previous: bool = False) -> Path:
    """Get the image provenance file for the local engine or a named host.

    Args:
        host_name: Remote host name, or None for the local engine.
        previous: Path of the record kept for the "previous" image instead.

    Returns:
        Path to the JSON provenance record.
    """
    stem, suffix = os.path.splitext(PROVENANCE_FILE)
    if host_name is not None:
        safe_name = "".join(c if c.isalnum() or c in "-_." else "-" for c in host_name)
        stem = f"{stem}-{safe_name}"
    if previous:
        stem = f"{stem}.previous"
    return get_data_dir() / f"{stem}{suffix}"


def is_windows_path(path: str | Path) -> bool:
    """Check if path is a Windows-style path (e.g., D:\\GitHub or D:/GitHub)."""
    return bool(re.match(r"^[A-Za-z]:[/\\]", str(path)))


def _normalize_separators(path_str: str) -> str:
    normalized = path_str.replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    if len(normalized) > 1:
        normalized = normalized.rstrip("/")
    return normalized


def resolve_for_docker(path: str | Path) -> str:
    """Resolve a host path to the format Docker expects for bind mounts.

    Handles:
    - Windows paths (D:\\GitHub\\...) -> /d/GitHub/...
    - WSL paths (/mnt/d/...) -> /d/...
    - Native Linux/macOS paths -> unchanged

    Args:
        path: Absolute host path.

    Returns:
        Docker-compatible path string.

    Examples:
        >>> resolve_for_docker("D:/GitHub/Project")
        '/d/GitHub/Project'
        >>> resolve_for_docker("/mnt/c/Users/name")
        '/c/Users/name'
        >>> resolve_for_docker("/home/user/project")
        '/home/user/project'
    """
    path_str = str(path).replace("\\", "/")

    match = re.match(r"^([A-Za-z]):/*(.*)$", path_str)
    if match and is_windows_path(path_str):
        drive = match.group(1).lower()
        rest = _normalize_separators(match.group(2))
        return f"/{drive}/{rest}" if rest else f"/{drive}"

    match = re.match(r"^/mnt/([a-z])(?:/(.*))?$", path_str)
    if match:
        drive = match.group(1)
        rest = _normalize_separators(match.group(2) or "")
        return f"/{drive}/{rest}" if rest else f"/{drive}"

    return path_str
