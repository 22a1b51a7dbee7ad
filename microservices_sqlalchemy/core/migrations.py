"""
Schema migrations at startup.

Alembic's command API is synchronous (and its env.py may run its own event
loop), so the upgrade runs in a worker thread.
"""

import asyncio
import logging

from alembic import command
from alembic.config import Config
from sqlalchemy.engine import make_url

from microservices_sqlalchemy.core.errors import StartupError

logger = logging.getLogger(__name__)

_BLOCKING_DRIVERS = {
    "postgresql": "postgresql+psycopg",
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def sync_database_url(url: str) -> str:
    """Swap an async driver for its blocking counterpart (psycopg for PostgreSQL)."""
    parsed = make_url(url)
    driver = _BLOCKING_DRIVERS.get(parsed.drivername)
    if driver is None:
        return url
    return parsed.set(drivername=driver).render_as_string(hide_password=False)


class MigrationRunner:
    """
    Upgrade a database to a target revision.

    Args:
        connection_string: Database URL; async drivers are swapped for
            blocking ones before it is written to `sqlalchemy.url`
        config_path: Path to alembic.ini
        script_location: Overrides `script_location` from the ini file
        revision: Target revision
    """

    def __init__(
        self,
        connection_string: str,
        config_path: str = "alembic.ini",
        script_location: str | None = None,
        revision: str = "head",
    ):
        self.connection_string = connection_string
        self.config_path = config_path
        self.script_location = script_location
        self.revision = revision

    def build_config(self) -> Config:
        config = Config(self.config_path)
        # ini values are interpolated, so a literal % must be doubled
        url = sync_database_url(self.connection_string)
        config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
        if self.script_location:
            config.set_main_option("script_location", self.script_location)
        return config

    def upgrade(self) -> None:
        command.upgrade(self.build_config(), self.revision)

    async def run(self) -> None:
        """
        Apply pending migrations.

        Raises:
            StartupError: The upgrade failed; the original error is chained
        """
        logger.info(f"Applying database migrations up to {self.revision}")
        try:
            await asyncio.to_thread(self.upgrade)
        except Exception as e:
            logger.error(f"Database migration failed: {e}", exc_info=True)
            raise StartupError(
                "Database migration failed",
                details={"revision": self.revision, "error": str(e)},
            ) from e
        logger.info("Database migrations applied")
