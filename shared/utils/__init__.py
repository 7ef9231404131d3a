"""Utility modules."""

from shared.utils.logging import setup_logging, get_logger, LogContext

__all__ = ["setup_logging", "get_logger", "LogContext"]
