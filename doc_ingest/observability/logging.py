"""Logging setup shared by the Celery worker and local entry points."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty third-party loggers that drown out pipeline lines at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "pinecone")


def configure_logging(level: str | int = "INFO", logger: logging.Logger | None = None) -> None:
    """
    Apply the worker log format and level.

    With *logger* (Celery's after_setup_logger hands one in) only that logger's
    handlers are re-formatted; otherwise the root logger is configured.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if logger is None:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        logging.getLogger().setLevel(level)
    else:
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setFormatter(logging.Formatter(LOG_FORMAT))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
