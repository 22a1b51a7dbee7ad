"""
Generic repository over a `DbContext`.

Queries are shaped by a specification: predicates, then sorting, then eager
fetching, then the optional skip/take window. Writes only mark state on the
context's session; `DbContext.save_changes()` commits them.

Lookups that match nothing return None. Storage faults are never swallowed:
they surface as persistence errors chained to the original exception.
"""

import logging
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar, overload, runtime_checkable

from sqlalchemy import Row, Select, func, inspect, select

from microservices_sqlalchemy.core.db import DbContext, translate_error
from microservices_sqlalchemy.core.errors import InvalidOperationError
from microservices_sqlalchemy.specifications import QuerySpecification

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Projection(Generic[R]):
    """
    Columns to select instead of whole entities.

    The columns are pushed down into the SELECT list. Each row is turned
    into a result by `into` (called with the row's columns as keyword
    arguments); without it a single column yields scalars and several
    columns yield rows.

        summary = Projection(Person.id, Person.name, into=PersonSummary)
    """

    def __init__(self, *columns: Any, into: Callable[..., R] | None = None):
        if not columns:
            raise InvalidOperationError("A projection needs at least one column")
        self.columns = columns
        self.into = into

    def apply(self, query: Select[Any]) -> Select[Any]:
        return query.with_only_columns(*self.columns)

    def materialize(self, row: Row[Any]) -> R:
        if self.into is not None:
            return self.into(**row._asdict())
        if len(self.columns) == 1:
            return row[0]
        return row  # type: ignore[return-value]


@runtime_checkable
class Repository(Protocol[T]):
    """Entity-typed data access; the contract `SqlAlchemyRepository` implements."""

    async def get_by_id(self, id: Any) -> T | None: ...

    async def get(
        self, spec: QuerySpecification[T], projection: Projection[Any] | None = None
    ) -> Any: ...

    async def get_many(
        self,
        spec: QuerySpecification[T],
        projection: Projection[Any] | None = None,
        *,
        skip: int | None = None,
        take: int | None = None,
    ) -> list[Any]: ...

    async def add(self, entity: T) -> None: ...

    async def update(self, entity: T) -> None: ...

    async def delete(self, entity: T) -> None: ...

    async def count(self, spec: QuerySpecification[T]) -> int: ...

    async def exists(self, spec: QuerySpecification[T]) -> bool: ...


def _validate_window(skip: int | None, take: int | None) -> None:
    if skip is not None and skip < 0:
        raise InvalidOperationError("skip must not be negative", details={"skip": skip})
    if take is not None and take < 0:
        raise InvalidOperationError("take must not be negative", details={"take": take})


class SqlAlchemyRepository(Generic[T]):
    """
    Repository for one mapped entity type bound to one `DbContext`.

    Holds no state of its own; the context's session owns tracked entities
    and pending changes.
    """

    def __init__(self, context: DbContext, entity_type: type[T]):
        self.context = context
        self.entity_type = entity_type

    @property
    def session(self):
        return self.context.session

    def _base_query(self, spec: QuerySpecification[T]) -> Select[Any]:
        return spec.add_predicates(select(self.entity_type))

    async def get_by_id(self, id: Any) -> T | None:
        """
        Look an entity up by primary key.

        Entities already loaded in this context are returned from the
        session's identity map without a round trip.
        """
        entity = await self.context.execute(
            lambda: self.session.get(self.entity_type, id), "get_by_id"
        )
        if entity is None:
            logger.debug(f"{self.entity_type.__name__} not found: id={id}")
        return entity

    @overload
    async def get(self, spec: QuerySpecification[T]) -> T | None: ...

    @overload
    async def get(self, spec: QuerySpecification[T], projection: Projection[R]) -> R | None: ...

    async def get(
        self, spec: QuerySpecification[T], projection: Projection[R] | None = None
    ) -> T | R | None:
        """
        Return the first entity (or projection) matching the specification.

        At most one row is read. When several rows match, the first one in
        the specification's sort order wins.
        """
        query = spec.add_sorting(self._base_query(spec))

        if projection is None:
            query = spec.add_eager_fetching(query).limit(1)

            async def _first_entity() -> T | None:
                result = await self.session.execute(query)
                return result.unique().scalars().first()

            return await self.context.execute(_first_entity, "get")

        query = projection.apply(query).limit(1)

        async def _first_projection() -> R | None:
            result = await self.session.execute(query)
            row = result.first()
            return projection.materialize(row) if row is not None else None

        return await self.context.execute(_first_projection, "get_projection")

    @overload
    async def get_many(
        self,
        spec: QuerySpecification[T],
        *,
        skip: int | None = None,
        take: int | None = None,
    ) -> list[T]: ...

    @overload
    async def get_many(
        self,
        spec: QuerySpecification[T],
        projection: Projection[R],
        *,
        skip: int | None = None,
        take: int | None = None,
    ) -> list[R]: ...

    async def get_many(
        self,
        spec: QuerySpecification[T],
        projection: Projection[R] | None = None,
        *,
        skip: int | None = None,
        take: int | None = None,
    ) -> list[T] | list[R]:
        """
        Return every entity (or projection) matching the specification.

        Args:
            spec: Specification shaping the query
            projection: Columns to select instead of entities
            skip: Rows to skip after sorting (None means no offset)
            take: Maximum rows to return (None means no limit)

        Returns:
            Fully materialized list in the specification's sort order
        """
        _validate_window(skip, take)

        query = spec.add_sorting(self._base_query(spec))
        if projection is None:
            query = spec.add_eager_fetching(query)
        else:
            query = projection.apply(query)
        if skip is not None:
            query = query.offset(skip)
        if take is not None:
            query = query.limit(take)

        async def _all() -> list[Any]:
            result = await self.session.execute(query)
            if projection is None:
                return list(result.unique().scalars().all())
            return [projection.materialize(row) for row in result.all()]

        items = await self.context.execute(_all, "get_many")
        logger.debug(
            f"Retrieved {len(items)} {self.entity_type.__name__} rows",
            extra={"skip": skip, "take": take},
        )
        return items

    async def count(self, spec: QuerySpecification[T]) -> int:
        """Number of entities matching the predicates; sorting and fetching are ignored."""
        query = select(func.count()).select_from(self._base_query(spec).subquery())
        total = await self.context.execute(lambda: self.session.scalar(query), "count")
        return int(total or 0)

    async def exists(self, spec: QuerySpecification[T]) -> bool:
        """True if at least one entity matches; runs `SELECT EXISTS (...)`."""
        query = select(self._base_query(spec).exists())
        found = await self.context.execute(lambda: self.session.scalar(query), "exists")
        return bool(found)

    async def add(self, entity: T) -> None:
        """Register a new entity; it is inserted by `save_changes()`."""
        self._mark(self.session.add, entity, "add")

    async def update(self, entity: T) -> None:
        """
        Make the entity's current state the one to persist.

        Tracked entities need nothing further. Detached entities are
        re-attached with their pending attribute changes; entities built
        outside any session are merged by primary key.
        """
        if entity in self.session:
            return
        state = inspect(entity, raiseerr=False)
        if state is not None and state.detached:
            self._mark(self.session.add, entity, "update")
            return
        await self.context.execute(lambda: self.session.merge(entity), "update")

    async def delete(self, entity: T) -> None:
        """Mark an entity for removal; it is deleted by `save_changes()`."""
        await self.context.execute(lambda: self.session.delete(entity), "delete")

    def _mark(self, action: Callable[[Any], None], entity: T, name: str) -> None:
        try:
            action(entity)
        except Exception as e:
            translated = translate_error(e, name)
            if translated is e:
                raise
            raise translated from e
