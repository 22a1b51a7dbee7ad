"""Tests for structured logging, database metrics and telemetry toggles."""

import json
import logging
import sys

import pytest
from prometheus_client import CollectorRegistry

from microservices_sqlalchemy.core.errors import (
    ERROR_STATUS_MAP,
    PersistenceError,
    ServiceNotRegisteredError,
    StartupError,
    get_status_code,
)
from microservices_sqlalchemy.core.observability import (
    Metrics,
    StructuredFormatter,
    set_correlation_id,
    track_db_operation,
)
from microservices_sqlalchemy.core.telemetry import get_trace_id, init_telemetry
from tests.conftest import make_settings


class TestStructuredFormatter:
    @pytest.mark.anyio
    async def test_formats_json_with_request_id_and_extra(self):
        set_correlation_id("req-42")
        record = logging.LogRecord(
            "microservices_sqlalchemy.repos", logging.INFO, __file__, 10, "Retrieved %d rows", (2,),
            None,
        )
        record.operation = "get_many"

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "Retrieved 2 rows"
        assert entry["level"] == "INFO"
        assert entry["request_id"] == "req-42"
        assert entry["extra"] == {"operation": "get_many"}
        set_correlation_id("")

    @pytest.mark.anyio
    async def test_includes_exception_summary(self):
        try:
            raise StartupError("migration failed")
        except StartupError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", (), sys.exc_info())

        entry = json.loads(StructuredFormatter().format(record))
        assert entry["exception"] == {"type": "StartupError", "message": "migration failed"}


class TestTrackDbOperation:
    @pytest.mark.anyio
    async def test_records_success_and_error(self):
        m = Metrics(CollectorRegistry())

        with track_db_operation("count", m):
            pass
        with pytest.raises(ValueError):
            with track_db_operation("count", m):
                raise ValueError("bad")

        sample = m.registry.get_sample_value
        assert sample("db_queries_total", {"operation": "count", "status": "success"}) == 1
        assert sample("db_queries_total", {"operation": "count", "status": "error"}) == 1
        assert sample("db_query_duration_seconds_count", {"operation": "count"}) == 2


class TestErrors:
    @pytest.mark.anyio
    async def test_every_error_has_a_status(self):
        for error_type, status_code in ERROR_STATUS_MAP.items():
            assert get_status_code(error_type("x")) == status_code

    @pytest.mark.anyio
    async def test_unknown_errors_are_500(self):
        assert get_status_code(ValueError()) == 500

    @pytest.mark.anyio
    async def test_details_default_to_empty(self):
        error = ServiceNotRegisteredError("missing")
        assert isinstance(error, PersistenceError)
        assert error.details == {}
        assert str(error) == "missing"


class TestTelemetry:
    @pytest.mark.anyio
    async def test_disabled_by_default(self):
        assert init_telemetry(make_settings()) is None

    @pytest.mark.anyio
    async def test_no_trace_id_outside_span(self):
        assert get_trace_id() is None
