"""
Structured logging setup for the reference server using structlog.

Diagnostic output always goes to stderr: stdout belongs to the protocol
transport and must carry nothing but framed JSON-RPC messages.
"""

import logging
import sys
import time
from typing import Any, Optional

import structlog

from common.config import Config


def _select_renderer(log_format: str) -> Any:
    """Pick the final structlog renderer for the configured format."""
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(config: Config) -> None:
    """
    Setup structured logging using structlog.

    Args:
        config: Application configuration
    """
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _select_renderer(config.log_format),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Explicit stream: the default would be stderr too, but stdout is off limits
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(message)s"))

    logging.basicConfig(
        level=log_level,
        handlers=[stderr_handler],
        format="%(message)s",
        force=True,
    )

    # asyncio's own warnings are diagnostic output as well
    logging.getLogger("asyncio").setLevel(max(log_level, logging.WARNING))


class TimedLogger:
    """Context manager for timing operations and logging elapsed time using structlog."""

    def __init__(self, logger: structlog.BoundLogger, event: str, **context: Any):
        """
        Initialize timed logger.

        Args:
            logger: structlog logger instance
            event: Event name for the log entry
            **context: Additional context to include in logs
        """
        self.logger = logger
        self.event = event
        self.context = context
        self.start_time: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def __enter__(self) -> "TimedLogger":
        """Start timing."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Log elapsed time."""
        if self.start_time is not None:
            self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
            self.logger.debug(
                event=self.event,
                elapsed_ms=self.elapsed_ms,
                success=exc_type is None,
                **self.context,
            )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a configured structlog logger."""
    return structlog.get_logger(name)
