"""
Host lifecycle hooks.

Each initializer registers services on the `ServiceCollection` and may run
async work (migrations, warm-up) during application startup.
"""

from microservices_sqlalchemy.initializers.base import MicroserviceInitializer
from microservices_sqlalchemy.initializers.db_context import DbContextInitializer
from microservices_sqlalchemy.initializers.repository import (
    RepositoryInitializer,
    repository_key,
)

__all__ = [
    "DbContextInitializer",
    "MicroserviceInitializer",
    "RepositoryInitializer",
    "repository_key",
]
