"""
Structured logging and OpenTelemetry accessors.

Exporter and SDK wiring belongs to the hosting process; this module only
configures structlog and hands out API-level meters and tracers.
"""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.metrics import Meter
from opentelemetry.trace import Tracer
from structlog.typing import Processor

from subledger.settings import get_settings


def configure_structlog() -> None:
    """Configure structlog for structured logging."""
    settings = get_settings()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Batch runs bind run_id through contextvars
    if settings.observability.enable_correlation_ids:
        processors.insert(0, structlog.contextvars.merge_contextvars)

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    logging.basicConfig(
        format="%(message)s",
        level=settings.observability.log_level.value,
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_meter(name: str) -> Meter:
    """Return an OpenTelemetry meter scoped under the service name."""
    service = get_settings().observability.otel_service_name
    return metrics.get_meter(f"{service}.{name}")


def get_tracer(name: str) -> Tracer:
    """Return an OpenTelemetry tracer scoped under the service name."""
    service = get_settings().observability.otel_service_name
    return trace.get_tracer(f"{service}.{name}")
