"""
Unit tests for health checks and the health endpoints.

Tests cover:
- Liveness endpoint
- Readiness with the database probe passing and failing
- Registry behaviour when a probe raises
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from microservices_sqlalchemy.core.db import DatabaseEngine
from microservices_sqlalchemy.core.health import (
    DatabaseHealthCheck,
    HealthCheck,
    HealthCheckRegistry,
    HealthCheckResult,
)
from microservices_sqlalchemy.initializers import DbContextInitializer
from microservices_sqlalchemy.main import create_app
from tests.conftest import make_settings


def app_with_database(**initializer_kwargs):
    settings = make_settings()
    return create_app([DbContextInitializer(settings, **initializer_kwargs)], settings)


class ExplodingCheck:
    name = "exploding"

    async def check(self) -> HealthCheckResult:
        raise RuntimeError("probe bug")


# ============================================================================
# Tests: Endpoints
# ============================================================================


@pytest.mark.anyio
async def test_health_ok() -> None:
    with TestClient(app_with_database()) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.anyio
async def test_readyz_returns_200_when_db_reachable() -> None:
    with TestClient(app_with_database()) as client:
        resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "db": "ok"}


@patch.object(DatabaseEngine, "ping", new_callable=AsyncMock)
@pytest.mark.anyio
async def test_readyz_returns_503_when_db_unreachable(mock_ping: AsyncMock) -> None:
    mock_ping.side_effect = ConnectionRefusedError("Connection refused")

    with TestClient(app_with_database()) as client:
        resp = client.get("/readyz")

    assert resp.status_code == 503
    # Failure details stay in the logs
    assert resp.json() == {"ok": False, "db": "unavailable"}


@patch.object(DatabaseEngine, "ping", new_callable=AsyncMock)
@pytest.mark.anyio
async def test_health_stays_ok_when_db_unreachable(mock_ping: AsyncMock) -> None:
    mock_ping.side_effect = ConnectionRefusedError("Connection refused")

    with TestClient(app_with_database()) as client:
        live = client.get("/health")
        ready = client.get("/readyz")

    assert live.status_code == 200
    assert ready.status_code == 503


@pytest.mark.anyio
async def test_readyz_without_probes_is_ready() -> None:
    with TestClient(app_with_database(enable_health_checks=False)) as client:
        resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


# ============================================================================
# Tests: Registry and probes
# ============================================================================


@pytest.mark.anyio
async def test_database_health_check_reports_healthy(database: DatabaseEngine) -> None:
    check = DatabaseHealthCheck(database)

    result = await check.check()

    assert isinstance(check, HealthCheck)
    assert result.name == "db"
    assert result.healthy is True


@pytest.mark.anyio
async def test_database_health_check_reports_failure() -> None:
    database = AsyncMock(spec=DatabaseEngine)
    database.ping.side_effect = TimeoutError()

    result = await DatabaseHealthCheck(database, name="primary").check()

    assert result == HealthCheckResult("primary", False, result.duration_ms)


@pytest.mark.anyio
async def test_registry_reports_raising_probe_unhealthy(database: DatabaseEngine) -> None:
    registry = HealthCheckRegistry()
    registry.add(ExplodingCheck())
    registry.add(DatabaseHealthCheck(database))

    results = await registry.run_all()

    assert [(r.name, r.healthy) for r in results] == [("exploding", False), ("db", True)]
