"""Tests for boxkeeper.logging module."""

from __future__ import annotations

import logging
import os
from unittest.mock import patch

import pytest

from boxkeeper.logging import (
    ENGINE_LOGGERS,
    LOG_FORMAT_DEBUG,
    ROOT_LOGGER_NAME,
    _get_log_level,
    get_logger,
    set_debug,
)


@pytest.fixture(autouse=True)
def reset_level():
    yield
    set_debug(False)


class TestGetLogLevel:
    def test_default_is_warning(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            assert _get_log_level() == logging.WARNING

    @pytest.mark.parametrize("value", ["1", "true", "YES", " yes "])
    def test_debug_values(self, value: str) -> None:
        with patch.dict(os.environ, {"BOXKEEPER_DEBUG": value}):
            assert _get_log_level() == logging.DEBUG

    def test_unknown_value_is_warning(self) -> None:
        with patch.dict(os.environ, {"BOXKEEPER_DEBUG": "verbose"}):
            assert _get_log_level() == logging.WARNING


class TestGetLogger:
    def test_module_name_nested_under_root(self) -> None:
        assert get_logger("tunnel").name == "boxkeeper.tunnel"

    def test_package_name_kept(self) -> None:
        assert get_logger("boxkeeper.engine").name == "boxkeeper.engine"

    def test_similar_prefix_still_nested(self) -> None:
        assert get_logger("boxkeeperish").name == "boxkeeper.boxkeeperish"

    def test_single_handler(self) -> None:
        get_logger("a")
        get_logger("b")
        assert len(logging.getLogger(ROOT_LOGGER_NAME).handlers) == 1


class TestSetDebug:
    def test_raises_engine_loggers(self) -> None:
        set_debug(True)
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.DEBUG
        for name in ENGINE_LOGGERS:
            assert logging.getLogger(name).level == logging.DEBUG

        set_debug(False)
        for name in ENGINE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_debug_format_has_line_numbers(self) -> None:
        set_debug(True)
        handler = logging.getLogger(ROOT_LOGGER_NAME).handlers[0]
        assert handler.formatter is not None
        assert handler.formatter._fmt == LOG_FORMAT_DEBUG

    def test_debug_messages_filtered_by_default(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = get_logger("level_test")
        with caplog.at_level(logging.WARNING, logger=ROOT_LOGGER_NAME):
            logger.debug("tunnel port 40001")
            logger.warning("engine ping failed")
        assert "tunnel port" not in caplog.text
        assert "engine ping failed" in caplog.text
