"""Utility modules for the region capture engine.

Provides:
- Structured logging configuration
"""

from .logging import CaptureSessionLogger, LogContext, configure_logging, get_logger, log_operation

__all__ = [
    "configure_logging",
    "get_logger",
    "LogContext",
    "log_operation",
    "CaptureSessionLogger",
]
