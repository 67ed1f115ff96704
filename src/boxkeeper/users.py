"""Login users inside the service container.

The web UI authenticates against the container's own PAM accounts, so users
are managed by running the usual shadow-utils commands through engine exec.
Passwords only ever travel over the exec's stdin stream: they never show up in
a command line, an environment variable or a log message.
"""

from __future__ import annotations

import re
import secrets
import socket
import string
from dataclasses import dataclass
from typing import Iterable

from docker.errors import APIError
from docker.utils.socket import frames_iter

from .constants import (
    CONTAINER_NAME,
    GENERATED_PASSWORD_LENGTH,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
)
from .engine import CLIENT_ERRORS, EngineConnection, translate_engine_error
from .errors import ContainerError, ContainerNotRunningError, ValidationError
from .logging import get_logger

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PASSWORD_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str


@dataclass(frozen=True)
class UserInfo:
    username: str
    uid: int
    home: str
    shell: str
    locked: bool = False


def _exec_error(conn: EngineConnection, container: str, exc: Exception) -> Exception:
    if isinstance(exc, APIError) and exc.status_code == 409:
        return ContainerNotRunningError(container)
    if isinstance(exc, APIError):
        return ContainerError(f"Exec in {container} failed: {exc.explanation or exc}")
    return translate_engine_error(exc, conn.label)


def run_exec(
    conn: EngineConnection, cmd: list[str], *, container: str = CONTAINER_NAME
) -> ExecResult:
    """Run a command in the container and collect its combined output."""
    logger.debug("exec in %s: %s", container, cmd[0])
    try:
        exec_id = conn.api.exec_create(container, cmd, stdout=True, stderr=True)["Id"]
        raw = conn.api.exec_start(exec_id)
        exit_code = conn.api.exec_inspect(exec_id).get("ExitCode")
    except CLIENT_ERRORS as e:
        raise _exec_error(conn, container, e) from e
    output = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw or "")
    return ExecResult(exit_code=exit_code if exit_code is not None else -1, output=output)


def exec_with_stdin(
    conn: EngineConnection,
    cmd: list[str],
    stdin_data: str,
    *,
    container: str = CONTAINER_NAME,
) -> ExecResult:
    """Run a command, feeding ``stdin_data`` on its standard input.

    Stdin is closed after writing so the command sees EOF.
    """
    logger.debug("exec with stdin in %s: %s", container, cmd[0])
    try:
        exec_id = conn.api.exec_create(
            container, cmd, stdin=True, stdout=True, stderr=True
        )["Id"]
        sock = conn.api.exec_start(exec_id, socket=True)
    except CLIENT_ERRORS as e:
        raise _exec_error(conn, container, e) from e

    raw_sock = getattr(sock, "_sock", sock)
    try:
        raw_sock.sendall(stdin_data.encode("utf-8"))
        raw_sock.shutdown(socket.SHUT_WR)
        chunks = [data for _, data in frames_iter(sock, tty=False) if data]
    except OSError as e:
        raise ContainerError(f"Exec stream to {container} failed: {e}") from e
    finally:
        sock.close()

    try:
        exit_code = conn.api.exec_inspect(exec_id).get("ExitCode")
    except CLIENT_ERRORS as e:
        raise _exec_error(conn, container, e) from e
    output = b"".join(chunks).decode("utf-8", errors="replace")
    return ExecResult(exit_code=exit_code if exit_code is not None else -1, output=output)


# === Validation ===


def validate_username(username: str) -> None:
    """Check a username before it reaches useradd.

    Raises:
        ValidationError: Wrong length or characters.
    """
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username may contain only letters, digits and underscores, "
            "and must not start with a digit"
        )


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def parse_passwd_line(line: str) -> UserInfo | None:
    """Parse one ``/etc/passwd`` line; None if malformed."""
    fields = line.strip().split(":")
    if len(fields) < 7:
        return None
    try:
        uid = int(fields[2])
    except ValueError:
        return None
    return UserInfo(username=fields[0], uid=uid, home=fields[5], shell=fields[6])


# === Operations ===


def user_exists(conn: EngineConnection, username: str) -> bool:
    return run_exec(conn, ["id", "-u", username]).exit_code == 0


def create_user(conn: EngineConnection, username: str) -> None:
    """Create a login user with a home directory.

    Raises:
        ContainerError: useradd failed (including "already exists").
    """
    result = run_exec(conn, ["useradd", "-m", "-s", "/bin/bash", username])
    if result.exit_code != 0:
        if user_exists(conn, username):
            raise ContainerError(f"User '{username}' already exists")
        raise ContainerError(
            f"Failed to create user '{username}' (exit {result.exit_code}): "
            f"{result.output.strip()}"
        )


def set_user_password(conn: EngineConnection, username: str, password: str) -> None:
    result = exec_with_stdin(conn, ["chpasswd"], f"{username}:{password}\n")
    if result.exit_code != 0:
        raise ContainerError(
            f"Failed to set password for '{username}' (exit {result.exit_code}): "
            f"{result.output.strip()}"
        )


def lock_user(conn: EngineConnection, username: str) -> None:
    result = run_exec(conn, ["passwd", "-l", username])
    if result.exit_code != 0:
        raise ContainerError(f"Failed to lock user '{username}': {result.output.strip()}")


def unlock_user(conn: EngineConnection, username: str) -> None:
    result = run_exec(conn, ["passwd", "-u", username])
    if result.exit_code != 0:
        raise ContainerError(f"Failed to unlock user '{username}': {result.output.strip()}")


def delete_user(conn: EngineConnection, username: str) -> None:
    """Delete a user and their home directory."""
    result = run_exec(conn, ["userdel", "-r", username])
    if result.exit_code != 0:
        if not user_exists(conn, username):
            raise ContainerError(f"User '{username}' does not exist")
        raise ContainerError(f"Failed to delete user '{username}': {result.output.strip()}")


def is_user_locked(conn: EngineConnection, username: str) -> bool:
    # passwd -S prints "<user> L ..." for locked accounts
    parts = run_exec(conn, ["passwd", "-S", username]).output.split()
    return len(parts) >= 2 and parts[1] == "L"


def list_users(conn: EngineConnection) -> list[UserInfo]:
    """Users with a home under /home, with their lock status."""
    result = run_exec(conn, ["sh", "-c", "getent passwd | grep '/home/'"])
    users = []
    for line in result.output.splitlines():
        info = parse_passwd_line(line)
        if info is None:
            continue
        users.append(
            UserInfo(
                username=info.username,
                uid=info.uid,
                home=info.home,
                shell=info.shell,
                locked=is_user_locked(conn, info.username),
            )
        )
    return users


def recreate_users(conn: EngineConnection, usernames: Iterable[str]) -> list[str]:
    """Recreate configured users in a fresh container.

    Accounts come back locked, since passwords do not survive a new
    container; the operator sets new ones with ``boxkeeper user passwd``.

    Returns:
        Usernames that were created.
    """
    created = []
    for username in usernames:
        if user_exists(conn, username):
            continue
        create_user(conn, username)
        lock_user(conn, username)
        created.append(username)
        logger.info("Recreated user %s (locked until a password is set)", username)
    return created
