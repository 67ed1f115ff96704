"""Pytest configuration and fixtures for boxkeeper tests.

This module ensures the boxkeeper package is importable during tests
without requiring installation, and points every config/data path at a
temporary directory so tests never touch the real user state.
"""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest

# Add src directory to path for development testing
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    """Config and data directories under tmp_path."""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    monkeypatch.setenv("BOXKEEPER_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("BOXKEEPER_DATA_DIR", str(data_dir))
    return config_dir, data_dir


@pytest.fixture
def plain() -> Callable[[str], str]:
    """Strip Rich's ANSI styling from captured CLI output."""
    return lambda text: ANSI_RE.sub("", text)


@pytest.fixture
def conn() -> MagicMock:
    """A local engine connection with a mocked low-level API."""
    mock = MagicMock()
    mock.is_remote = False
    mock.host_name = None
    mock.label = "local"
    mock.inspect_container.return_value = None
    mock.inspect_image.return_value = None
    mock.container_logs.return_value = []
    return mock


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
