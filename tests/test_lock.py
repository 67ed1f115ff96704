"""Tests for the single-instance PID lock."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from boxkeeper.errors import AlreadyRunningError
from boxkeeper.lock import InstanceLock, is_process_alive, read_pid


class TestIsProcessAlive:
    def test_current_process(self) -> None:
        assert is_process_alive(os.getpid()) is True

    def test_invalid_pids(self) -> None:
        assert is_process_alive(0) is False
        assert is_process_alive(-5) is False

    def test_missing_process(self) -> None:
        with patch("boxkeeper.lock.os.kill", side_effect=ProcessLookupError):
            assert is_process_alive(4242) is False

    def test_other_users_process_counts_as_alive(self) -> None:
        with patch("boxkeeper.lock.os.kill", side_effect=PermissionError):
            assert is_process_alive(1) is True


class TestReadPid:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert read_pid(tmp_path / "none.pid") is None

    def test_garbage(self, tmp_path: Path) -> None:
        path = tmp_path / "x.pid"
        path.write_text("not a pid")
        assert read_pid(path) is None

    def test_valid(self, tmp_path: Path) -> None:
        path = tmp_path / "x.pid"
        path.write_text("1234\n")
        assert read_pid(path) == 1234


class TestInstanceLock:
    def test_acquire_writes_pid_and_release_removes(self, tmp_path: Path) -> None:
        path = tmp_path / "run" / "boxkeeper.pid"
        with InstanceLock.acquire(path) as lock:
            assert lock.is_held
            assert read_pid(path) == os.getpid()
        assert not path.exists()
        assert not lock.is_held

    def test_released_on_exception(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        with pytest.raises(RuntimeError), InstanceLock.acquire(path):
            raise RuntimeError("fail inside")
        assert not path.exists()

    def test_live_holder_blocks(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        path.write_text("999999\n")
        with patch("boxkeeper.lock.is_process_alive", return_value=True):
            with pytest.raises(AlreadyRunningError) as exc_info:
                InstanceLock.acquire(path)
        assert "999999" in str(exc_info.value)
        assert read_pid(path) == 999999

    def test_stale_lock_is_reclaimed(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        path.write_text("999999\n")
        with patch("boxkeeper.lock.is_process_alive", return_value=False):
            lock = InstanceLock.acquire(path)
        assert read_pid(path) == os.getpid()
        lock.release()
        assert not path.exists()

    def test_unparsable_lock_is_reclaimed(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        path.write_text("garbage")
        with InstanceLock.acquire(path):
            assert read_pid(path) == os.getpid()

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        lock = InstanceLock.acquire(path)
        lock.release()
        lock.release()
        assert not path.exists()

    def test_release_keeps_foreign_pid(self, tmp_path: Path) -> None:
        path = tmp_path / "boxkeeper.pid"
        lock = InstanceLock.acquire(path)
        path.write_text("12345\n")
        lock.release()
        assert read_pid(path) == 12345
