from typing import Any

from microservices_sqlalchemy.core.config import Settings
from microservices_sqlalchemy.core.db import DbContext
from microservices_sqlalchemy.core.services import ServiceCollection
from microservices_sqlalchemy.initializers.base import MicroserviceInitializer
from microservices_sqlalchemy.repos.repository import Repository, SqlAlchemyRepository


def repository_key(entity_type: type) -> Any:
    """Registry key of the repository for `entity_type`."""
    return Repository[entity_type]


class RepositoryInitializer(MicroserviceInitializer):
    """
    Registers `Repository[entity_type]` as a transient service built on the
    request-scoped context. Requires a `DbContextInitializer` for the same
    context type.
    """

    def __init__(
        self,
        settings: Settings,
        entity_type: type,
        context_type: type[DbContext] = DbContext,
    ):
        super().__init__(settings)
        self.entity_type = entity_type
        self.context_type = context_type

    def configure_services(self, services: ServiceCollection) -> None:
        entity_type, context_type = self.entity_type, self.context_type
        services.add_transient(
            repository_key(entity_type),
            lambda scope: SqlAlchemyRepository(scope.get(context_type), entity_type),
        )
