import logging
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from microservices_sqlalchemy.api.routes.health import router as health_router
from microservices_sqlalchemy.core.config import AppEnvironment, Settings, get_settings
from microservices_sqlalchemy.core.errors import PersistenceError, StartupError, get_status_code
from microservices_sqlalchemy.core.health import HealthCheckRegistry
from microservices_sqlalchemy.core.observability import (
    ObservabilityMiddleware,
    configure_structured_logging,
    extract_request_context,
    metrics_endpoint,
)
from microservices_sqlalchemy.core.services import ServiceCollection
from microservices_sqlalchemy.core.telemetry import (
    init_telemetry,
    instrument_fastapi,
    shutdown_telemetry,
)
from microservices_sqlalchemy.initializers.base import MicroserviceInitializer

logger = logging.getLogger(__name__)

_SENSITIVE_PATTERNS = [
    r"[/\\][\w/-]+\.py",  # File paths
    r"SELECT.*FROM",  # SQL queries
    r"INSERT INTO.*VALUES",
    r"UPDATE.*SET",
    r"DELETE FROM",
    r"\[parameters:",  # Bound parameters
]


def _sanitize_error_details(details: dict[str, Any], environment: AppEnvironment) -> dict[str, Any]:
    """
    Redact SQL, bound parameters and file paths outside development.

    Args:
        details: Original error details dictionary
        environment: Current application environment

    Returns:
        Sanitized details dictionary
    """
    if environment.is_development:
        return details

    sanitized: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, str):
            if any(re.search(p, value, re.IGNORECASE | re.DOTALL) for p in _SENSITIVE_PATTERNS):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = value
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_error_details(value, environment)
        else:
            sanitized[key] = value
    return sanitized


def _build_services(
    initializers: Sequence[MicroserviceInitializer],
) -> ServiceCollection:
    services = ServiceCollection()
    services.add_singleton(HealthCheckRegistry, lambda scope: HealthCheckRegistry())
    for initializer in initializers:
        initializer.configure_services(services)
    return services


def create_app(
    initializers: Sequence[MicroserviceInitializer],
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Sets up:
    - Structured logging with correlation IDs
    - The service provider, stored on `app.state.services`
    - A lifespan running every initializer's `configure` hook at startup
      and closing the provider at shutdown
    - Observability middleware (metrics, request tracking)
    - Exception handlers mapping persistence errors to HTTP codes
    - Health routes and the Prometheus metrics endpoint

    Args:
        initializers: Lifecycle hooks, run in order
        settings: Application settings (loaded from the environment if omitted)
    """
    settings = settings or get_settings()
    initializers = list(initializers)

    if settings.observability_structured_logs:
        configure_structured_logging(settings.app_log_level)

    provider = _build_services(initializers).build_provider()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_telemetry(settings)
        instrument_fastapi(app, settings)
        try:
            for initializer in initializers:
                try:
                    await initializer.configure(app, settings.app_env)
                except StartupError:
                    raise
                except Exception as e:
                    raise StartupError(
                        f"{type(initializer).__name__} failed during startup",
                        details={"error": str(e)},
                    ) from e
            logger.info(f"{settings.app_name} started", extra={"env": settings.app_env.value})
            yield
        finally:
            await provider.aclose()
            shutdown_telemetry()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.services = provider
    app.state.settings = settings

    if settings.observability_enabled:
        app.add_middleware(
            ObservabilityMiddleware, request_id_header=settings.observability_request_id_header
        )

    # ============================================================================
    # Exception Handlers
    # ============================================================================

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        status_code = get_status_code(exc)
        context = {
            "details": exc.details,
            "path": request.url.path,
            **extract_request_context(request),
        }
        if status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=context)
        else:
            logger.warning(f"{exc.__class__.__name__}: {exc.message}", extra=context)

        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.__class__.__name__,
                "message": exc.message,
                "details": _sanitize_error_details(exc.details, settings.app_env),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log the full exception; return a generic 500 without internals."""
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={"path": request.url.path, **extract_request_context(request)},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )

    app.include_router(health_router)

    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return metrics_endpoint()

    if settings.observability_enabled:
        app.add_route("/metrics", metrics)

    return app
