"""Structured logging configuration with JSON output and job context.

Uses python-json-logger for structured JSON logging suitable for
log aggregation systems like Loki, ELK, or CloudWatch.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

from webhook_sync.config import get_settings

# Context variables bound for the duration of a job pass
job_ctx: ContextVar[str | None] = ContextVar("job", default=None)
pass_id_ctx: ContextVar[str | None] = ContextVar("pass_id", default=None)
repository_id_ctx: ContextVar[str | None] = ContextVar("repository_id", default=None)


class JobContextFilter(logging.Filter):
    """Log filter that adds the current job context to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Explicit values passed through extra= win over the bound context
        record.job = getattr(record, "job", None) or job_ctx.get()
        record.pass_id = getattr(record, "pass_id", None) or pass_id_ctx.get()
        record.repository_id = getattr(record, "repository_id", None) or repository_id_ctx.get()
        try:
            from webhook_sync.observability.tracing import get_trace_ids

            trace_id, span_id = get_trace_ids()
            record.trace_id = trace_id
            record.span_id = span_id
        except Exception:
            record.trace_id = None
            record.span_id = None
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for field in ("job", "pass_id", "repository_id", "trace_id", "span_id"):
            value = getattr(record, field, None)
            if value:
                log_record[field] = value

        # Source location for debugging
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno


def setup_logging() -> None:
    """Configure structured logging for the API and the worker."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)

    # JSON in deployed environments, plain text for local runs
    if settings.log_format == "json":
        formatter: logging.Formatter = CustomJsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    handler.addFilter(JobContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    # Reduce verbosity of third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("celery.beat").setLevel(logging.INFO)

    logging.info(
        "Logging configured",
        extra={
            "environment": settings.environment,
            "log_level": settings.log_level,
            "log_format": settings.log_format,
        },
    )