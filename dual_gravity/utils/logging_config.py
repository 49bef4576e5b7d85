"""
Logging Configuration

structlog on top of the stdlib logging module:
- rotating ``dual_gravity.log`` with everything at the configured level
- rotating ``errors.log`` with errors only
- colored console output for development
- request-scoped context through structlog contextvars
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

NOISY_LIBRARIES = ["aiohttp", "aiohttp.access", "httpx", "urllib3", "uvicorn.access"]


class DualGravityLogger:
    """
    Process-wide logging setup.

    Args:
        log_dir: Directory for the log files
        log_level: Root log level name
        enable_console: Also log to stdout
        max_file_size: Bytes per file before rotation
        backup_count: Rotated files to keep
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: str = "INFO",
        enable_console: bool = True,
        max_file_size: int = 10 * 1024 * 1024,
        backup_count: int = 5
    ):
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper(), logging.INFO)
        self.enable_console = enable_console
        self.max_file_size = max_file_size
        self.backup_count = backup_count

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._setup_logging()

    def _setup_logging(self):
        root_logger = logging.getLogger()
        root_logger.handlers.clear()

        self._configure_structlog()
        for filename, level in (("dual_gravity.log", self.log_level), ("errors.log", logging.ERROR)):
            root_logger.addHandler(self._create_rotating_file_handler(filename, level))
        if self.enable_console:
            root_logger.addHandler(self._create_console_handler())

        # Third-party HTTP chatter stays at WARNING unless debugging
        if self.log_level != logging.DEBUG:
            for name in NOISY_LIBRARIES:
                logging.getLogger(name).setLevel(logging.WARNING)

        root_logger.setLevel(self.log_level)

    def _configure_structlog(self):
        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]
        structlog.configure(
            processors=shared_processors + [
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def _create_rotating_file_handler(self, filename: str, level: int) -> logging.handlers.RotatingFileHandler:
        handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / filename,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
            encoding="utf-8"
        )
        handler.setLevel(level)
        handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
        ))
        return handler

    def _create_console_handler(self) -> logging.StreamHandler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.log_level)
        handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=True),
        ))
        return handler

    def get_logger(self, name: str) -> structlog.BoundLogger:
        return structlog.get_logger(name)

    def set_request_context(self, request_id: str, **extra: Any):
        """Bind the request id (and extras) to every log line of this request."""
        clear_contextvars()
        bind_contextvars(
            request_id=request_id,
            started_at=datetime.now(timezone.utc).isoformat(),
            **extra
        )

    def log_performance(self, operation: str, duration: float, **kwargs):
        self.get_logger("performance").info(
            "performance_metric",
            operation=operation,
            duration_seconds=round(duration, 4),
            **kwargs
        )

    def log_error(self, error: Exception, context: Dict[str, Any], **kwargs):
        self.get_logger("errors").error(
            "error_occurred",
            error_type=type(error).__name__,
            error_message=str(error),
            context=context,
            **kwargs
        )


_logger_instance: Optional[DualGravityLogger] = None


def setup_logging(
    log_dir: str = "logs",
    log_level: str = "INFO",
    enable_console: bool = True,
    **kwargs
) -> DualGravityLogger:
    """
    Configure logging for the process.

    Args:
        log_dir: Directory for the log files
        log_level: Root log level name
        enable_console: Also log to stdout
        **kwargs: Passed through to DualGravityLogger

    Returns:
        The configured logger instance
    """
    global _logger_instance
    _logger_instance = DualGravityLogger(
        log_dir=log_dir,
        log_level=log_level,
        enable_console=enable_console,
        **kwargs
    )
    return _logger_instance


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Logger for a component.

    Raises:
        RuntimeError: If setup_logging() has not been called
    """
    if _logger_instance is None:
        raise RuntimeError("Logging not setup. Call setup_logging() first.")
    return _logger_instance.get_logger(name)


def log_performance(operation: str, duration: float, **kwargs):
    if _logger_instance:
        _logger_instance.log_performance(operation, duration, **kwargs)


def log_error(error: Exception, context: Dict[str, Any], **kwargs):
    if _logger_instance:
        _logger_instance.log_error(error, context, **kwargs)


def set_request_context(request_id: str, **extra: Any):
    """Bind request context; without setup_logging() it is bound directly."""
    if _logger_instance:
        _logger_instance.set_request_context(request_id, **extra)
    else:
        clear_contextvars()
        bind_contextvars(request_id=request_id, **extra)
