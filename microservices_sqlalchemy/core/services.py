"""
Service registry with explicit lifetimes.

Initializers register factories on a `ServiceCollection`; the host builds a
`ServiceProvider` from it and opens one `ServiceScope` per request.

    services = ServiceCollection()
    services.add_singleton(DatabaseEngine, lambda scope: DatabaseEngine(settings))
    services.add_scoped(DbContext, lambda scope: DbContext(scope.get(DatabaseEngine)))

    provider = services.build_provider()
    async with provider.create_scope() as scope:
        context = scope.get(DbContext)

Instances exposing a `close()` method (sync or async) are closed when their
owner goes away: scoped instances at scope exit, singletons in
`ServiceProvider.aclose()`.
"""

import inspect
import logging
from collections.abc import AsyncIterator, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from microservices_sqlalchemy.core.errors import (
    InvalidOperationError,
    ServiceNotRegisteredError,
)

logger = logging.getLogger(__name__)


class ServiceLifetime(str, Enum):
    SINGLETON = "singleton"
    SCOPED = "scoped"
    TRANSIENT = "transient"


Factory = Callable[["ServiceScope"], Any]


@dataclass(frozen=True)
class ServiceDescriptor:
    key: Hashable
    lifetime: ServiceLifetime
    factory: Factory


def _describe(key: Hashable) -> str:
    return getattr(key, "__qualname__", None) or repr(key)


async def _close_instance(instance: Any) -> None:
    close = getattr(instance, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


class ServiceCollection:
    """Mutable set of registrations. Later registrations replace earlier ones."""

    def __init__(self) -> None:
        self._descriptors: dict[Hashable, ServiceDescriptor] = {}

    def add(
        self, key: Hashable, lifetime: ServiceLifetime, factory: Factory
    ) -> "ServiceCollection":
        self._descriptors[key] = ServiceDescriptor(key, lifetime, factory)
        logger.debug(f"Registered {lifetime.value} service {_describe(key)}")
        return self

    def add_singleton(self, key: Hashable, factory: Factory) -> "ServiceCollection":
        return self.add(key, ServiceLifetime.SINGLETON, factory)

    def add_scoped(self, key: Hashable, factory: Factory) -> "ServiceCollection":
        return self.add(key, ServiceLifetime.SCOPED, factory)

    def add_transient(self, key: Hashable, factory: Factory) -> "ServiceCollection":
        return self.add(key, ServiceLifetime.TRANSIENT, factory)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._descriptors

    def get_descriptor(self, key: Hashable) -> ServiceDescriptor | None:
        return self._descriptors.get(key)

    def build_provider(self) -> "ServiceProvider":
        return ServiceProvider(dict(self._descriptors))


class ServiceScope:
    """
    Resolution context owning scoped instances.

    The root scope of a provider owns singletons and refuses scoped services.
    """

    def __init__(self, provider: "ServiceProvider", *, is_root: bool = False):
        self.provider = provider
        self.is_root = is_root
        self._instances: dict[Hashable, Any] = {}
        self._creation_order: list[Any] = []

    def get(self, key: Hashable) -> Any:
        """
        Resolve a service.

        Raises:
            ServiceNotRegisteredError: No registration for `key`
            InvalidOperationError: Scoped service requested outside a scope
        """
        descriptor = self.provider.descriptors.get(key)
        if descriptor is None:
            raise ServiceNotRegisteredError(
                f"No service registered for {_describe(key)}",
                details={"service": _describe(key)},
            )

        if descriptor.lifetime is ServiceLifetime.SINGLETON:
            return self.provider.get_singleton(descriptor)
        if descriptor.lifetime is ServiceLifetime.TRANSIENT:
            return descriptor.factory(self)

        if self.is_root:
            raise InvalidOperationError(
                f"Scoped service {_describe(key)} cannot be resolved from the root provider",
                details={"service": _describe(key)},
            )
        if key not in self._instances:
            instance = descriptor.factory(self)
            self._instances[key] = instance
            self._creation_order.append(instance)
        return self._instances[key]

    async def close(self) -> None:
        """Close owned instances in reverse creation order."""
        instances, self._creation_order = self._creation_order, []
        self._instances.clear()
        for instance in reversed(instances):
            await _close_instance(instance)


class ServiceProvider:
    """Built registry: resolves singletons and opens request scopes."""

    def __init__(self, descriptors: dict[Hashable, ServiceDescriptor]):
        self.descriptors = descriptors
        self._root = ServiceScope(self, is_root=True)

    def get(self, key: Hashable) -> Any:
        """Resolve a singleton or transient service outside any request scope."""
        return self._root.get(key)

    def get_singleton(self, descriptor: ServiceDescriptor) -> Any:
        root = self._root
        if descriptor.key not in root._instances:
            instance = descriptor.factory(root)
            root._instances[descriptor.key] = instance
            root._creation_order.append(instance)
        return root._instances[descriptor.key]

    @asynccontextmanager
    async def create_scope(self) -> AsyncIterator[ServiceScope]:
        """Open a scope; its instances are closed on every exit path."""
        scope = ServiceScope(self)
        try:
            yield scope
        finally:
            await scope.close()

    async def aclose(self) -> None:
        """Close singletons (e.g. dispose the database engine)."""
        await self._root.close()
