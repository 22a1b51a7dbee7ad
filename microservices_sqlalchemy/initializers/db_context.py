import logging

from fastapi import FastAPI

from microservices_sqlalchemy.core.config import AppEnvironment, Settings
from microservices_sqlalchemy.core.db import DatabaseEngine, DbContext
from microservices_sqlalchemy.core.errors import StartupError
from microservices_sqlalchemy.core.health import DatabaseHealthCheck, HealthCheckRegistry
from microservices_sqlalchemy.core.migrations import MigrationRunner
from microservices_sqlalchemy.core.services import ServiceCollection
from microservices_sqlalchemy.initializers.base import MicroserviceInitializer

logger = logging.getLogger(__name__)


class DbContextInitializer(MicroserviceInitializer):
    """
    Registers the database engine, the request-scoped context and, when
    enabled, a database readiness probe. Applies migrations at startup when
    enabled.

    Arguments left as None fall back to the matching settings
    (`database_url`, `apply_migrations`, `enable_health_checks`).

    Args:
        settings: Application settings
        connection_string: Database URL
        apply_migrations: Run Alembic migrations during startup
        enable_health_checks: Add a database probe to `/readyz`
        context_type: `DbContext` or a subclass of it
    """

    def __init__(
        self,
        settings: Settings,
        connection_string: str | None = None,
        apply_migrations: bool | None = None,
        enable_health_checks: bool | None = None,
        context_type: type[DbContext] = DbContext,
    ):
        super().__init__(settings)
        self.connection_string = connection_string or settings.database_url
        self.apply_migrations = (
            settings.apply_migrations if apply_migrations is None else apply_migrations
        )
        self.enable_health_checks = (
            settings.enable_health_checks if enable_health_checks is None else enable_health_checks
        )
        self.context_type = context_type

    def configure_services(self, services: ServiceCollection) -> None:
        services.add_singleton(
            DatabaseEngine, lambda scope: DatabaseEngine(self.settings, self.connection_string)
        )
        context_type = self.context_type
        services.add_scoped(context_type, lambda scope: context_type(scope.get(DatabaseEngine)))
        if context_type is not DbContext:
            # Same scoped instance under the base key
            services.add_transient(DbContext, lambda scope: scope.get(context_type))

        if self.enable_health_checks:
            self._register_health_check(services)

    def _register_health_check(self, services: ServiceCollection) -> None:
        descriptor = services.get_descriptor(HealthCheckRegistry)
        build_registry = descriptor.factory if descriptor else lambda scope: HealthCheckRegistry()

        def factory(scope):
            registry = build_registry(scope)
            registry.add(DatabaseHealthCheck(scope.get(DatabaseEngine)))
            return registry

        services.add_singleton(HealthCheckRegistry, factory)

    def migration_runner(self) -> MigrationRunner:
        return MigrationRunner(
            self.connection_string,
            config_path=self.settings.alembic_config,
            script_location=self.settings.alembic_script_location,
        )

    async def configure(self, app: FastAPI, environment: AppEnvironment) -> None:
        """
        Apply migrations when enabled.

        Raises:
            StartupError: Migrations failed
        """
        if not self.apply_migrations:
            logger.debug("Skipping database migrations (APPLY_MIGRATIONS=false)")
            return
        try:
            await self.migration_runner().run()
        except StartupError:
            raise
        except Exception as e:
            raise StartupError("Database initialization failed", details={"error": str(e)}) from e
