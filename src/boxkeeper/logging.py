"""Diagnostic logging for boxkeeper.

User-facing output goes through the Rich console in cli/utils.py. This module
is for diagnostics only: engine calls, tunnel lifecycle, retry attempts.
Everything logs under the ``boxkeeper`` namespace to stderr, at WARNING
unless debugging is switched on with ``boxkeeper --debug`` or
``BOXKEEPER_DEBUG=1``.

In debug mode the docker-py and urllib3 loggers are raised to DEBUG as well,
so the HTTP traffic to the engine (local socket or tunnel port) is visible
next to boxkeeper's own messages.

    logger = get_logger(__name__)
    logger.debug("Pulling %s (attempt %d)", ref, attempt)
"""

from __future__ import annotations

import logging
import os
import sys

ROOT_LOGGER_NAME = "boxkeeper"
DEBUG_ENV_VAR = "BOXKEEPER_DEBUG"

# Libraries whose chatter is only useful when chasing engine problems
ENGINE_LOGGERS = ("docker", "urllib3")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DEBUG = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
DATE_FORMAT = "%H:%M:%S"

_handler: logging.Handler | None = None


def _get_log_level() -> int:
    """Log level requested by the environment."""
    value = os.environ.get(DEBUG_ENV_VAR, "").strip().lower()
    return logging.DEBUG if value in ("1", "true", "yes") else logging.WARNING


def _apply_level(level: int) -> None:
    debug = level == logging.DEBUG
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    if _handler is not None:
        _handler.setLevel(level)
        _handler.setFormatter(
            logging.Formatter(LOG_FORMAT_DEBUG if debug else LOG_FORMAT, datefmt=DATE_FORMAT)
        )
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


def _init_logging() -> None:
    """Attach the stderr handler once per process."""
    global _handler
    if _handler is not None:
        return

    root = logging.getLogger(ROOT_LOGGER_NAME)
    _handler = logging.StreamHandler(sys.stderr)
    root.addHandler(_handler)
    # Engine loggers share the handler so their output lands in one stream
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).addHandler(_handler)
    _apply_level(_get_log_level())


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, placed under the boxkeeper namespace.

    Args:
        name: Module name (typically __name__).
    """
    _init_logging()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(ROOT_LOGGER_NAME).getChild(name)


def set_debug(enabled: bool = True) -> None:
    """Switch debug logging on or off (the CLI's --debug flag)."""
    _init_logging()
    _apply_level(logging.DEBUG if enabled else logging.WARNING)
