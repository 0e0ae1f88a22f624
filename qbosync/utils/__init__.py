"""Utility modules for logging, token encryption, and time helpers."""

from qbosync.utils.logging import configure_logging, get_logger
from qbosync.utils.timeutil import utcnow

__all__ = ["configure_logging", "get_logger", "utcnow"]
