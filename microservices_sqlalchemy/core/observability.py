"""
Logging, metrics and request correlation for the persistence host.

Every request carries a correlation ID (taken from the request header or
generated) that the JSON log formatter stamps on each record, together with
the repository operation in flight, if any. Repository operations and retries
are counted on a private Prometheus registry served at `/metrics`.

Usage:
    with track_db_operation("get_many"):
        rows = await session.execute(stmt)
"""

import json
import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from fastapi import Request, Response
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from microservices_sqlalchemy.core.telemetry import get_trace_id

_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
_db_operation_ctx: ContextVar[str] = ContextVar("db_operation", default="")


def generate_request_id() -> str:
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Correlation ID of the request being handled ("" outside requests)."""
    return _request_id_ctx.get()


def set_correlation_id(request_id: str) -> None:
    _request_id_ctx.set(request_id)


def get_db_operation() -> str:
    """Name of the repository operation running in this task, if any."""
    return _db_operation_ctx.get()


# ============================================================================
# Structured Logging
# ============================================================================

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp, level, logger, message, source location, and when
    available request_id, trace_id, db_operation, exception and extra.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in (
            ("request_id", get_request_id()),
            ("trace_id", get_trace_id()),
            ("db_operation", get_db_operation()),
        ):
            if value:
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value = record.exc_info[0], record.exc_info[1]
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc_value)}

        entry["source"] = f"{record.pathname}:{record.lineno}"
        entry["function"] = record.funcName

        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRIBUTES}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


def configure_structured_logging(level: str = "INFO") -> None:
    """Route all logging through a single JSON stream handler."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)


# ============================================================================
# Prometheus Metrics
# ============================================================================

_registry = CollectorRegistry()

_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
_QUERY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


class Metrics:
    """
    Host metrics.

    HTTP: request count, latency and in-flight gauge per route.
    Repository: operation count by outcome, operation latency, and retries
    after transient storage failures.
    """

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry

        self.http_requests_total = Counter(
            "http_requests_total",
            "HTTP requests handled",
            ["method", "route", "status_code"],
            registry=registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
            ["method", "route"],
            buckets=_LATENCY_BUCKETS,
            registry=registry,
        )
        self.http_requests_in_progress = Gauge(
            "http_requests_in_progress",
            "HTTP requests being handled",
            ["method", "route"],
            registry=registry,
        )

        self.db_queries_total = Counter(
            "db_queries_total",
            "Repository operations by outcome",
            ["operation", "status"],
            registry=registry,
        )
        self.db_query_duration_seconds = Histogram(
            "db_query_duration_seconds",
            "Repository operation latency in seconds, retries included",
            ["operation"],
            buckets=_QUERY_BUCKETS,
            registry=registry,
        )
        self.db_retries_total = Counter(
            "db_retries_total",
            "Repository operations retried after a transient failure",
            ["operation"],
            registry=registry,
        )


metrics = Metrics(_registry)


@contextmanager
def track_db_operation(operation: str, metrics_instance: Metrics | None = None) -> Iterator[None]:
    """
    Time a repository operation and count its outcome.

    Cancellation counts as an error. The operation name is visible to log
    records emitted inside the block.
    """
    m = metrics_instance or metrics
    token = _db_operation_ctx.set(operation)
    start = time.perf_counter()
    status = "error"
    try:
        yield
        status = "success"
    finally:
        _db_operation_ctx.reset(token)
        m.db_query_duration_seconds.labels(operation=operation).observe(
            time.perf_counter() - start
        )
        m.db_queries_total.labels(operation=operation, status=status).inc()


# ============================================================================
# Middleware
# ============================================================================


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Assigns the correlation ID, echoes it in the response, records HTTP
    metrics and logs one line per request (probes and /metrics excepted).
    """

    def __init__(
        self,
        app: ASGIApp,
        metrics_instance: Metrics | None = None,
        skip_paths: list[str] | None = None,
        request_id_header: str = "X-Request-ID",
    ) -> None:
        super().__init__(app)
        self.metrics = metrics_instance or metrics
        self.skip_paths = tuple(skip_paths or ("/health", "/readyz", "/metrics"))
        self.request_id_header = request_id_header
        self.logger = logging.getLogger("microservices_sqlalchemy.request")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.request_id_header) or generate_request_id()
        set_correlation_id(request_id)

        method, route = request.method, request.url.path
        in_progress = self.metrics.http_requests_in_progress.labels(method=method, route=route)
        in_progress.inc()
        status_code = 500
        failed = False
        start = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[self.request_id_header] = request_id
            return response
        except Exception as e:
            failed = True
            self.logger.error(
                f"{method} {route} - {type(e).__name__}: {e}",
                extra={"method": method, "route": route, "status_code": 500},
                exc_info=True,
            )
            raise
        finally:
            latency = time.perf_counter() - start
            in_progress.dec()
            self.metrics.http_requests_total.labels(
                method=method, route=route, status_code=status_code
            ).inc()
            self.metrics.http_request_duration_seconds.labels(method=method, route=route).observe(
                latency
            )
            if not failed and not route.startswith(self.skip_paths):
                self.logger.info(
                    f"{method} {route}",
                    extra={
                        "method": method,
                        "route": route,
                        "status_code": status_code,
                        "latency_ms": round(latency * 1000, 2),
                    },
                )


def metrics_endpoint() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(_registry),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def extract_request_context(request: Request) -> dict[str, Any]:
    """Context attached to log records emitted by exception handlers."""
    return {"request_id": get_request_id(), "method": request.method}
