"""Logging setup for applications that embed cmdexec.

The library itself only logs through ``logging.getLogger(__name__)``;
call :func:`configure_logging` from an entry point to route those records.
"""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["configure_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> list[logging.Handler]:
    """Install handlers for the ``cmdexec`` namespace.

    With ``log_debug`` enabled, records go to ``config.log_file`` at DEBUG
    level; otherwise they go to stderr at INFO level. Third-party loggers
    stay at WARNING.

    Returns:
        the handlers that were installed
    """
    config = config or get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
        force=True,
    )
    logging.getLogger("cmdexec").setLevel(log_level)
    return log_handlers
