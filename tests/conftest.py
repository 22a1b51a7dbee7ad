"""
Pytest configuration and shared fixtures.

Provides:
- AnyIO backend selection (asyncio)
- Settings pointing at an in-memory SQLite database
- `database`: DatabaseEngine with the test schema created
- `context`: Function-scoped DbContext, closed after the test
- `people`: Two seeded Person rows, A (age 30) and B (age 20)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from microservices_sqlalchemy.core.config import Settings
from microservices_sqlalchemy.core.db import DatabaseEngine, DbContext
from tests.models import Base, Order, OrderLine, Person

SQLITE_URL = "sqlite+aiosqlite:///:memory:"


# Per AnyIO testing docs: https://anyio.readthedocs.io/en/stable/testing.html
@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": SQLITE_URL,
        "app_env": "test",
        "observability_structured_logs": False,
        "db_max_retry_count": 2,
        "db_max_retry_delay": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


async def create_schema(database: DatabaseEngine) -> None:
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[DatabaseEngine]:
    database = DatabaseEngine(settings)
    await create_schema(database)
    yield database
    await database.close()


@pytest.fixture
async def context(database: DatabaseEngine) -> AsyncGenerator[DbContext]:
    context = DbContext(database)
    yield context
    await context.close()


@pytest.fixture
async def people(database: DatabaseEngine) -> dict[str, Person]:
    seed = DbContext(database)
    a = Person(id=1, name="A", age=30)
    b = Person(id=2, name="B", age=20)
    seed.session.add_all([a, b])
    await seed.save_changes()
    await seed.close()
    return {"A": a, "B": b}


@pytest.fixture
async def orders(database: DatabaseEngine, people: dict[str, Person]) -> None:
    seed = DbContext(database)
    seed.session.add_all(
        [
            Order(id=10, person_id=1, total=5),
            OrderLine(id=100, order_id=10, sku="sku-1"),
            OrderLine(id=101, order_id=10, sku="sku-2"),
        ]
    )
    await seed.save_changes()
    await seed.close()
