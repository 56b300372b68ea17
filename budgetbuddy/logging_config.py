"""Shared logger with per-request user context."""
from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Optional

LOGGER_NAME = "budgetbuddy"
LOG_FORMAT = "%(asctime)s [%(levelname)s] [user:%(user_id)s] %(message)s"


_current_user_id: ContextVar[Optional[int]] = ContextVar("budgetbuddy_user_id", default=None)


class UserContextFilter(logging.Filter):
    """Add the user id of the running request to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        user_id = _current_user_id.get()
        record.user_id = user_id if user_id is not None else "system"
        return True


_user_filter = UserContextFilter()
_configured = False


def get_logger(log_level: str | None = None) -> logging.Logger:
    """Get the application logger, configuring it on first use."""
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    if _configured:
        return logger

    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    )
    console_handler.addFilter(_user_filter)
    logger.addHandler(console_handler)
    logger.propagate = False

    _configured = True
    return logger


def set_user_context(user_id: Optional[int]) -> None:
    """Set the user id stamped on log records from the current context.

    Each thread and task has its own context, so concurrent requests never
    see each other's id.
    """
    _current_user_id.set(user_id)
