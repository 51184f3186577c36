"""Structured logging configuration for the region capture engine.

Provides:
- Structured logging with structlog
- Context-aware logging bound to capture sessions
- Operation start/end logging
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Optional

import structlog


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Output logs as JSON
        include_timestamp: Include timestamps in logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso") if include_timestamp else structlog.processors.TimeStamper(fmt=None),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None, **context) -> structlog.BoundLogger:
    """Get a configured logger with optional context.

    Args:
        name: Logger name
        **context: Additional context to bind

    Returns:
        Configured structlog logger
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


class LogContext:
    """Context manager for scoped logging context.

    Usage:
        with LogContext(session_id="session_123", selector="#feed"):
            logger.info("Capturing")
            # All logs within this block have session_id and selector bound
    """

    def __init__(self, **context):
        self.context = context
        self._bound = False

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        self._bound = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._bound:
            structlog.contextvars.unbind_contextvars(*self.context.keys())
            self._bound = False


@contextmanager
def log_operation(
    operation: str,
    logger: Optional[structlog.BoundLogger] = None,
    **context,
):
    """Context manager for logging operation start/end.

    Args:
        operation: Name of the operation
        logger: Optional logger to use
        **context: Additional context

    Yields:
        Dict to store operation results

    Example:
        with log_operation("stitch", session_id="abc") as op:
            raster = stitch()
            op["height"] = raster_height
    """
    log = logger or get_logger()
    log = log.bind(operation=operation, **context)

    log.info(f"{operation} started")
    result: dict[str, Any] = {"success": False, "error": None}

    try:
        yield result
        result["success"] = True
        log.info(f"{operation} completed", **result)
    except Exception as e:
        result["error"] = str(e)
        log.error(f"{operation} failed", **result)
        raise


class CaptureSessionLogger:
    """Logger specialized for capture session tracking.

    Provides structured logging for:
    - Session start/end
    - Segment capture
    - Stage transitions
    - Failures
    """

    def __init__(self, session_id: str, selector: str):
        self.log = get_logger("region_capture.session").bind(
            session_id=session_id,
            selector=selector,
        )
        self.segment_count = 0
        self.stage_count = 0

    def session_started(self, metadata: Optional[dict] = None) -> None:
        """Log session start."""
        self.log.info("Capture session started", **(metadata or {}))

    def session_completed(self, filename: str, duration_ms: float, size_bytes: int) -> None:
        """Log session completion."""
        self.log.info(
            "Capture session completed",
            filename=filename,
            duration_ms=duration_ms,
            size_bytes=size_bytes,
            segments_captured=self.segment_count,
            stages_run=self.stage_count,
        )

    def stage_started(self, stage: str) -> None:
        """Log pipeline stage start."""
        self.stage_count += 1
        self.log.debug("Stage started", stage=stage)

    def segment_captured(self, sequence_index: int, offset_y: float, size_bytes: int) -> None:
        """Log a captured segment."""
        self.segment_count = sequence_index + 1
        self.log.debug(
            "Segment captured",
            sequence_index=sequence_index,
            offset_y=offset_y,
            size_bytes=size_bytes,
        )

    def session_failed(self, kind: str, severity: str, error: str) -> None:
        """Log session failure."""
        self.log.error(
            "Capture session failed",
            kind=kind,
            severity=severity,
            error=error,
        )

    def warning(self, message: str, **context) -> None:
        """Log a warning."""
        self.log.warning(message, **context)
