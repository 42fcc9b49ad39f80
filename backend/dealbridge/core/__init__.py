"""Core application modules."""

from dealbridge.core.config import settings
from dealbridge.core.database import Base, get_db_context, init_db
from dealbridge.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "Base",
    "get_db_context",
    "init_db",
    "get_logger",
    "setup_logging",
]
