"""Logging configuration for the reconciliation services."""

import logging
import sys
from typing import Any

from dealbridge.core.config import settings


def setup_logging() -> None:
    """Configure application logging.

    Installs a single stdout handler on the root logger. DEBUG level is used
    when ``settings.debug`` is set, INFO otherwise.
    """
    log_level = logging.DEBUG if settings.debug else logging.INFO

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # httpx logs full request URLs, which carry the Pipedrive api_token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )

    logging.getLogger("dealbridge").setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger namespaced under ``dealbridge``.

    Args:
        name: The name of the module (typically __name__)

    Returns:
        A configured logger instance
    """
    if name == "dealbridge" or name.startswith("dealbridge."):
        return logging.getLogger(name)
    return logging.getLogger(f"dealbridge.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that appends context to log messages.

    Usage:
        logger = LoggerAdapter(get_logger(__name__), {"realm_id": "123"})
        logger.info("Refreshing token")  # "Refreshing token - realm_id=123"
    """

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        """Process the log message to include extra context."""
        extra = " - ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"{msg} - {extra}" if extra else msg, kwargs
