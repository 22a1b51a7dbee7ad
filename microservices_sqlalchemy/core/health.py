"""
Readiness probes.

Initializers add probes to the `HealthCheckRegistry` singleton; the
`/readyz` route runs them all and reports per-probe status.
"""

import logging
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from microservices_sqlalchemy.core.db import DatabaseEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    healthy: bool
    duration_ms: float = 0.0


@runtime_checkable
class HealthCheck(Protocol):
    name: str

    async def check(self) -> HealthCheckResult: ...


class DatabaseHealthCheck:
    """Probe that round-trips `SELECT 1` through the engine's pool."""

    def __init__(self, database: DatabaseEngine, name: str = "db"):
        self.database = database
        self.name = name

    async def check(self) -> HealthCheckResult:
        start = time.perf_counter()
        try:
            await self.database.ping()
        except Exception as exc:
            logger.error(f"Health check {self.name} failed: {exc}", exc_info=True)
            return HealthCheckResult(self.name, False, _elapsed_ms(start))
        return HealthCheckResult(self.name, True, _elapsed_ms(start))


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class HealthCheckRegistry:
    """Ordered set of probes."""

    def __init__(self) -> None:
        self._checks: list[HealthCheck] = []

    def add(self, check: HealthCheck) -> None:
        self._checks.append(check)

    @property
    def checks(self) -> list[HealthCheck]:
        return list(self._checks)

    async def run_all(self) -> list[HealthCheckResult]:
        """
        Run every probe in registration order.

        Never raises: a probe that errors out is reported unhealthy.
        """
        results = []
        for check in self._checks:
            try:
                result = await check.check()
            except Exception as exc:
                logger.error(f"Health check {check.name} raised: {exc}", exc_info=True)
                result = HealthCheckResult(check.name, False)
            results.append(result)
        return results
