"""Observability helpers: structured JSON logging and CloudWatch Embedded Metrics.

Import `init_observability` and call it early in your FastAPI app to activate.
"""
from __future__ import annotations

import logging
import os

from aws_embedded_metrics import metric_scope
import structlog

from settings import get_settings

__all__ = [
    "init_observability",
    "record_engine_metric",
    "metric_scope",  # re-export for convenience
]

logger = structlog.get_logger(__name__)

_configured = False


def _setup_logging() -> None:
    """Configure structlog for structured logging (JSON or console)."""

    log_format = os.getenv("LOG_FORMAT", "json").lower()
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    # Define shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Choose renderer based on format
    if log_format == "json":
        final_processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [final_processor],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # structlog renders the message; the stdlib handler only writes it out
    root_logger = logging.getLogger()
    root_logger.addHandler(logging.StreamHandler())
    root_logger.setLevel(log_level)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@metric_scope
def _put_metric(name: str, value: float, unit: str, dimensions: dict[str, str], metrics) -> None:
    metrics.set_namespace(get_settings().metrics_namespace)
    if dimensions:
        metrics.put_dimensions(dimensions)
    metrics.put_metric(name, value, unit)


def record_engine_metric(
    name: str, value: float = 1, unit: str = "Count", **dimensions: str
) -> None:
    """Emit one EMF metric (e.g. ``ContractsCreated``) when metrics are enabled."""
    if not get_settings().metrics_enabled:
        return
    _put_metric(name, value, unit, {k: str(v) for k, v in dimensions.items()})


def init_observability() -> None:
    """Setup logging. Call once at process start."""
    global _configured
    if _configured:
        return
    _setup_logging()
    _configured = True

    logger.info("Observability initialized")
