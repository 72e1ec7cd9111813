"""
Logging helpers for TailGuard.

All loggers live under the ``tailguard`` namespace so a host can tune the
whole package with one handler.
"""

from __future__ import annotations

import logging
import os
import threading

ROOT_LOGGER_NAME = 'tailguard'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_configured = False
_configure_lock = threading.Lock()


def _configure_root() -> None:
    """Attach a single stream handler to the package root logger."""
    global _configured
    with _configure_lock:
        if _configured:
            return

        root = logging.getLogger(ROOT_LOGGER_NAME)
        level_name = os.environ.get('TAILGUARD_LOG_LEVEL', 'INFO').upper()
        root.setLevel(getattr(logging, level_name, logging.INFO))

        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

        _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Dotted logger name, e.g. 'tailguard.detection'.

    Returns:
        The named logger. Names outside the package namespace are nested
        under it so they share the package handler.
    """
    _configure_root()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + '.'):
        name = f'{ROOT_LOGGER_NAME}.{name}'
    return logging.getLogger(name)
