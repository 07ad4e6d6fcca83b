"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from courier_dispatch.config import get_settings


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()

    # Configure standard library logging
    log_level = getattr(logging, settings.log_level)

    if settings.log_format == "json":
        # JSON logging for production
        handler = logging.StreamHandler(sys.stdout)
        formatter = jsonlogger.JsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
        handler.setFormatter(formatter)
    else:
        # Human-readable logging for development
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LifecycleLogger:
    """Specialized logger for delivery request state changes."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(component)

    def log_transition(
        self,
        request_id: str,
        from_state: str | None,
        to_state: str,
        driver_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Log a request moving between lifecycle states."""
        log_data = {
            "component": self.component,
            "request_id": request_id,
            "from_state": from_state,
            "to_state": to_state,
        }

        if driver_id is not None:
            log_data["driver_id"] = driver_id

        log_data.update(kwargs)
        self.logger.info("request_transition", **log_data)

    def log_rejection(
        self,
        request_id: str,
        operation: str,
        reason: str,
        driver_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Log a guard refusing an operation."""
        self.logger.warning(
            "transition_rejected",
            component=self.component,
            request_id=request_id,
            operation=operation,
            reason=reason,
            driver_id=driver_id,
            **kwargs,
        )

    def log_error(
        self,
        error: str,
        request_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an error."""
        self.logger.error(
            "lifecycle_error",
            component=self.component,
            request_id=request_id,
            error=error,
            **kwargs,
        )
