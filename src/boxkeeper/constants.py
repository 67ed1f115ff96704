"""Constants module for boxkeeper.

All timeout values and shared constants are defined here (SSOT).
"""

from __future__ import annotations

# === Identity ===
CONTAINER_NAME = "boxkeeper"  # One service container per engine
IMAGE_NAME_GHCR = "ghcr.io/boxkeeper/boxkeeper"  # Primary registry
IMAGE_NAME_DOCKERHUB = "boxkeeper/boxkeeper"  # Secondary registry
IMAGE_NAME_LOCAL = "boxkeeper"  # Canonical local repository
IMAGE_TAG_DEFAULT = "latest"
IMAGE_TAG_PREVIOUS = "previous"  # Kept by update for rollback
VERSION_LABEL = "org.boxkeeper.version"

# === Container layout ===
CONTAINER_PORT = 3000  # Service port inside the container
COCKPIT_CONTAINER_PORT = 9090  # Admin console port inside the container
CONTAINER_WORKDIR = "/workspace"
VOLUME_SESSION = "boxkeeper-session"
VOLUME_PROJECTS = "boxkeeper-projects"
VOLUME_CONFIG = "boxkeeper-config"
MOUNT_SESSION = "/home/boxkeeper/.local/share/opencode"
MOUNT_PROJECTS = "/workspace"
MOUNT_CONFIG = "/home/boxkeeper/.config/opencode"

# === Defaults ===
DEFAULT_PORT = 3000
DEFAULT_BIND_ADDRESS = "127.0.0.1"
DEFAULT_COCKPIT_PORT = 9090
PORT_SCAN_RANGE = 100  # Ports tried after a conflict

# === Engine timeouts (seconds) ===
ENGINE_CLIENT_TIMEOUT = 120  # docker-py HTTP timeout
DEFAULT_STOP_TIMEOUT = 30  # Graceful stop before SIGKILL
LOG_TAIL_LINES = 20  # Lines shown after a failed start

# === SSH tunnel ===
REMOTE_ENGINE_SOCKET = "/var/run/docker.sock"
SSH_CONNECT_TIMEOUT = 10  # ssh -o ConnectTimeout
TUNNEL_PROBE_TIMEOUT = 1.0  # Per-attempt TCP connect timeout
SSH_TEST_TIMEOUT = 30  # host test command

# === Retry schedules ===
TUNNEL_READY_ATTEMPTS = 3
TUNNEL_READY_BASE_DELAY = 0.1  # 100ms, 200ms, 400ms
ENGINE_CONNECT_ATTEMPTS = 3
ENGINE_CONNECT_BASE_DELAY = 0.1
PULL_ATTEMPTS = 3
PULL_BASE_DELAY = 1.0  # 1s, 2s

# === Readiness ===
READINESS_TIMEOUT = 60.0
READINESS_POLL_INTERVAL = 0.5
READINESS_CONNECT_TIMEOUT = 1.0
READINESS_REQUIRED_SUCCESSES = 3  # Consecutive TCP accepts
READINESS_LOG_INTERVAL = 1.0  # Fatal-log scan cadence
READINESS_LOG_TAIL = 20
FATAL_LOG_PATTERNS = (
    "failed to execute /sbin/init",
    "systemd: exec failed",
    "exec format error",
    "executable file not found",
    "no such file or directory",
    "permission denied",
    "cannot execute binary file",
    "failed to start",
)

# === Progress ===
SPINNER_THROTTLE = 0.15  # Min seconds between ordinary spinner updates
BUILD_LOG_BUFFER = 20  # Recent build lines kept for error context
ERROR_LOG_BUFFER = 10  # Error-looking build lines kept
LOG_BUFFER_MIN = 5
LOG_BUFFER_MAX = 500

# === Users ===
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 32
GENERATED_PASSWORD_LENGTH = 24

# === Files ===
CONFIG_FILE = "config.json"
HOSTS_FILE = "hosts.json"
PID_FILE = "boxkeeper.pid"
PROVENANCE_FILE = "image-state.json"
