"""Logging and tracing setup for the helpdesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import Settings

# Chatty dependencies only report problems.
_QUIET_LOGGERS = ("asyncpg", "uvicorn.access")
_ENGINE_LOGGER = "app.tickets"

_provider: TracerProvider | None = None


def parse_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings."""

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def logging_config(settings: Settings) -> dict[str, Any]:
    """Build the ``dictConfig`` payload for the API process.

    Assignment, lifecycle and transfer events are logged under
    ``app.tickets`` at the configured level; database driver chatter is
    capped at WARNING.
    """

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    loggers: dict[str, dict[str, Any]] = {_ENGINE_LOGGER: {"level": level}}
    for name in _QUIET_LOGGERS:
        loggers[name] = {"level": max(level, logging.WARNING)}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"helpdesk": {"format": settings.log_format}},
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": "helpdesk",
                "level": level,
            }
        },
        "loggers": loggers,
        "root": {"handlers": ["stderr"], "level": level},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    config = logging_config(settings)
    dictConfig(config)

    logger = logging.getLogger(settings.app_name)
    logger.setLevel(config["root"]["level"])
    logger.debug("Logging configured for %s (%s)", settings.app_name, settings.environment)
    return logger


def _span_exporter(settings: Settings) -> OTLPSpanExporter:
    options: dict[str, Any] = {}
    if settings.otel_exporter_otlp_endpoint:
        options["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        options["headers"] = headers
    return OTLPSpanExporter(**options)


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP/HTTP tracer provider once per process.

    Returns ``None`` when tracing is disabled or a provider is already live.
    """

    global _provider

    if _provider is not None or not settings.otel_enabled:
        return None

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(_span_exporter(settings)))
    trace.set_tracer_provider(provider)
    _provider = provider
    logging.getLogger(settings.app_name).info("Tracing exported as %s", settings.otel_service_name)
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _provider:
        _provider = None
