"""
FastAPI dependency injection utilities.

Every request gets one `ServiceScope`; scoped services resolved through it
(the `DbContext` in particular) are shared across the request's
dependencies and closed once the response is sent.

Usage:
    PersonRepository = Annotated[Repository[Person], Depends(repository_dependency(Person))]

    @router.get("/people/{person_id}")
    async def get_person(person_id: int, people: PersonRepository):
        return await people.get_by_id(person_id)
"""

from collections.abc import AsyncGenerator, Callable
from typing import Annotated, Any

from fastapi import Depends, Request

from microservices_sqlalchemy.core.db import DbContext
from microservices_sqlalchemy.core.services import ServiceProvider, ServiceScope
from microservices_sqlalchemy.initializers.repository import repository_key


def get_service_provider(request: Request) -> ServiceProvider:
    return request.app.state.services


async def get_service_scope(request: Request) -> AsyncGenerator[ServiceScope]:
    """Open the request scope; it is closed after the response on every path."""
    async with get_service_provider(request).create_scope() as scope:
        yield scope


Scope = Annotated[ServiceScope, Depends(get_service_scope)]


def get_db_context(scope: Scope) -> DbContext:
    return scope.get(DbContext)


DbContextDep = Annotated[DbContext, Depends(get_db_context)]


def repository_dependency(entity_type: type) -> Callable[[ServiceScope], Any]:
    """Build a dependency resolving the repository registered for `entity_type`."""
    key = repository_key(entity_type)

    def get_repository(scope: Scope) -> Any:
        return scope.get(key)

    return get_repository
