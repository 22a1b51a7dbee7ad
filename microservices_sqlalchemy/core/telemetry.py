"""
OpenTelemetry tracing for HTTP requests and database statements.

Off unless `otel_enabled` is set. Tracing failures are logged and never
prevent the host from starting.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from microservices_sqlalchemy.core.config import Settings

logger = logging.getLogger(__name__)

_provider: TracerProvider | None = None


def init_telemetry(settings: Settings) -> TracerProvider | None:
    """
    Install the global tracer provider with an OTLP/gRPC span exporter.

    Idempotent. Returns None when tracing is disabled or setup failed.
    """
    global _provider

    if not settings.otel_enabled:
        logger.info("Tracing disabled")
        return None
    if _provider is not None:
        return _provider

    resource = Resource.create(
        {SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.app_env.value}
    )
    try:
        provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.error(f"Tracing setup failed: {e}", exc_info=True)
        return None

    _provider = provider
    logger.info(
        "Tracing enabled",
        extra={
            "service_name": settings.otel_service_name,
            "otlp_endpoint": settings.otel_exporter_otlp_endpoint,
        },
    )
    return provider


def _instrument(target: str, settings: Settings, apply) -> None:
    if not settings.otel_enabled:
        return
    try:
        apply()
    except Exception as e:
        logger.error(f"Could not instrument {target}: {e}", exc_info=True)
        return
    logger.info(f"Tracing {target}")


def instrument_fastapi(app: Any, settings: Settings) -> None:
    """Emit a server span per HTTP request."""
    _instrument("HTTP requests", settings, lambda: FastAPIInstrumentor.instrument_app(app))


def instrument_sqlalchemy(engine: Any, settings: Settings) -> None:
    """
    Emit a client span per SQL statement.

    Args:
        engine: Sync engine; pass `AsyncEngine.sync_engine` for async engines
        settings: Application settings
    """
    _instrument(
        "SQL statements",
        settings,
        lambda: SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=True),
    )


def shutdown_telemetry() -> None:
    """Flush buffered spans and release the provider."""
    global _provider

    provider, _provider = _provider, None
    if provider is None:
        return
    try:
        provider.shutdown()
    except Exception as e:
        logger.error(f"Tracing shutdown failed: {e}", exc_info=True)


def get_trace_id() -> str | None:
    """Hex trace ID of the active span, or None when nothing is being recorded."""
    span = trace.get_current_span()
    if not span.is_recording():
        return None
    return format(span.get_span_context().trace_id, "032x")
