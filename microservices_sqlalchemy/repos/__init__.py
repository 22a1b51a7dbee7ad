"""
Repository layer for data access operations.

`SqlAlchemyRepository` runs specification-shaped queries and tracks writes on
the request's `DbContext`; `Projection` selects columns instead of entities.
"""

from microservices_sqlalchemy.repos.repository import (
    Projection,
    Repository,
    SqlAlchemyRepository,
)

__all__ = ["Projection", "Repository", "SqlAlchemyRepository"]
