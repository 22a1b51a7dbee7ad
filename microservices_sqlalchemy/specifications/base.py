"""
Query specifications.

A specification describes which rows a query selects, in which order, and
which related entities it loads alongside them, without executing anything.
Repositories apply its three transforms to a `select(entity)` statement:

    spec = (
        Specification[Person]()
        .where(Person.age > 25)
        .order_by(Person.age)
        .include("orders.lines")
    )

Specifications are immutable; every builder method returns a new instance.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from sqlalchemy import Select, inspect
from sqlalchemy.orm import InstrumentedAttribute, joinedload
from sqlalchemy.orm.interfaces import LoaderOption
from sqlalchemy.sql.elements import ColumnElement

from microservices_sqlalchemy.core.errors import InvalidOperationError

T = TypeVar("T")

SortKeyExpression = str | InstrumentedAttribute[Any] | ColumnElement[Any]
EagerLoadPath = str | InstrumentedAttribute[Any]


@runtime_checkable
class QuerySpecification(Protocol[T]):
    """The three query transforms a repository applies."""

    def add_predicates(self, query: Select[Any]) -> Select[Any]: ...

    def add_sorting(self, query: Select[Any]) -> Select[Any]: ...

    def add_eager_fetching(self, query: Select[Any]) -> Select[Any]: ...


@dataclass(frozen=True)
class SortKey:
    """A column (or attribute name) and its direction."""

    key: SortKeyExpression
    descending: bool = False


def root_entity(query: Select[Any]) -> type:
    """Return the mapped class a `select(Entity)` statement is rooted at."""
    descriptions = query.column_descriptions
    entity = descriptions[0].get("entity") if descriptions else None
    if entity is None:
        raise InvalidOperationError("Query is not rooted at a mapped entity")
    return entity


def _resolve_column(entity: type, name: str) -> InstrumentedAttribute[Any]:
    mapper = inspect(entity)
    if name not in mapper.all_orm_descriptors:
        raise InvalidOperationError(
            f"{entity.__name__} has no attribute '{name}' to sort by",
            details={"entity": entity.__name__, "attribute": name},
        )
    return getattr(entity, name)


def _resolve_path(entity: type, path: EagerLoadPath) -> LoaderOption:
    """Build a chained joinedload option for a relationship path."""
    if not isinstance(path, str):
        return joinedload(path)

    if not path:
        raise InvalidOperationError(
            f"Empty eager-load path on {entity.__name__}",
            details={"entity": entity.__name__, "path": path},
        )

    option = None
    current = entity
    for name in path.split("."):
        relationships = inspect(current).relationships
        if name not in relationships:
            raise InvalidOperationError(
                f"{current.__name__} has no relationship '{name}'",
                details={"entity": current.__name__, "path": path},
            )
        attribute = getattr(current, name)
        option = joinedload(attribute) if option is None else option.joinedload(attribute)
        current = relationships[name].mapper.class_
    return option


@dataclass(frozen=True, eq=False)
class Specification(Generic[T]):
    """
    Immutable query description: AND-combined predicates, ordered sort keys
    and eager-load paths. An empty specification matches every row.
    """

    predicates: tuple[ColumnElement[bool], ...] = ()
    sort_keys: tuple[SortKey, ...] = ()
    includes: tuple[EagerLoadPath, ...] = ()

    def where(self, *predicates: ColumnElement[bool]) -> Specification[T]:
        return replace(self, predicates=self.predicates + predicates)

    def order_by(self, key: SortKeyExpression, *, descending: bool = False) -> Specification[T]:
        return replace(self, sort_keys=self.sort_keys + (SortKey(key, descending),))

    def order_by_descending(self, key: SortKeyExpression) -> Specification[T]:
        return self.order_by(key, descending=True)

    def include(self, *paths: EagerLoadPath) -> Specification[T]:
        return replace(self, includes=self.includes + paths)

    def __and__(self, other: Specification[T]) -> Specification[T]:
        """Combine two specifications; sort keys of `self` take precedence."""
        return Specification(
            predicates=self.predicates + other.predicates,
            sort_keys=self.sort_keys + other.sort_keys,
            includes=self.includes + other.includes,
        )

    def add_predicates(self, query: Select[Any]) -> Select[Any]:
        if not self.predicates:
            return query
        return query.where(*self.predicates)

    def add_sorting(self, query: Select[Any]) -> Select[Any]:
        if not self.sort_keys:
            return query
        clauses = []
        for sort_key in self.sort_keys:
            column = sort_key.key
            if isinstance(column, str):
                column = _resolve_column(root_entity(query), column)
            clauses.append(column.desc() if sort_key.descending else column.asc())
        return query.order_by(*clauses)

    def add_eager_fetching(self, query: Select[Any]) -> Select[Any]:
        if not self.includes:
            return query
        entity = root_entity(query)
        return query.options(*(_resolve_path(entity, path) for path in self.includes))
