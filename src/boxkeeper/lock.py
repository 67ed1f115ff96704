"""Single-instance lock backed by a PID file.

The lock is advisory: it only excludes other boxkeeper processes that use the
same data directory. A PID file whose process no longer exists is stale and is
reclaimed by the next acquirer, so a crash never blocks later runs.

Usage:
    with InstanceLock.acquire(get_pid_path()):
        ...  # start/stop/update the service
"""

from __future__ import annotations

import contextlib
import errno
import os
from pathlib import Path
from typing import Any

from .errors import AlreadyRunningError, LockError
from .logging import get_logger

logger = get_logger(__name__)


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this PID exists.

    Signal 0 performs the existence and permission check without delivering
    anything. EPERM means the process exists but belongs to another user.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OverflowError, ValueError):
        return False
    except OSError as e:
        return e.errno == errno.EPERM
    return True


def read_pid(path: Path) -> int | None:
    """Read the PID recorded in a lock file, or None if missing or unparsable."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise LockError(f"Failed to read lock file {path}: {e}") from e
    try:
        return int(text)
    except ValueError:
        logger.debug("Ignoring unparsable lock file content: %r", text)
        return None


class InstanceLock:
    """Context manager holding the PID file for the current process.

    The file is removed when:
    1. The context exits normally
    2. The context exits via exception
    3. release() is called explicitly
    4. The lock object is garbage collected while still held
    """

    def __init__(self, path: Path, pid: int) -> None:
        self.path = path
        self.pid = pid
        self._released = False

    @classmethod
    def acquire(cls, path: Path) -> InstanceLock:
        """Take the lock at ``path``.

        Args:
            path: PID file location.

        Returns:
            A held lock.

        Raises:
            AlreadyRunningError: A live process already holds the lock.
            LockError: The directory or file could not be created.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"Failed to create lock directory {path.parent}: {e}") from e

        existing = read_pid(path)
        if existing is not None and existing != os.getpid() and is_process_alive(existing):
            raise AlreadyRunningError(existing)

        if path.exists():
            logger.debug("Removing stale lock file %s (PID %s)", path, existing)
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

        pid = os.getpid()
        try:
            # O_EXCL: if another process recreated the file after our check, fail instead of
            # overwriting its PID
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as e:
            other = read_pid(path)
            if other is not None:
                raise AlreadyRunningError(other) from e
            raise LockError(f"Lock file {path} appeared while acquiring") from e
        except OSError as e:
            raise LockError(f"Failed to create lock file {path}: {e}") from e

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{pid}\n")

        logger.debug("Acquired instance lock %s (PID %d)", path, pid)
        return cls(path, pid)

    def release(self) -> None:
        """Remove the PID file. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        # Only remove the file if it still records our PID
        if read_pid(self.path) == self.pid:
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()
            logger.debug("Released instance lock %s", self.path)

    @property
    def is_held(self) -> bool:
        return not self._released

    def __enter__(self) -> InstanceLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.release()

    def __del__(self) -> None:
        with contextlib.suppress(Exception):
            self.release()
