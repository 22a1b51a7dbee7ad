"""
Database engine and unit-of-work context.

`DatabaseEngine` owns the async engine, its pool and the session factory; one
instance lives for the whole process. `DbContext` wraps a single
`AsyncSession` and lives for one request scope: it tracks pending changes,
runs queries under the retry policy and translates storage faults.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from microservices_sqlalchemy.core.config import Settings
from microservices_sqlalchemy.core.errors import (
    ConstraintViolationError,
    InvalidOperationError,
    PersistenceError,
    TransientStorageError,
)
from microservices_sqlalchemy.core.observability import metrics, track_db_operation
from microservices_sqlalchemy.core.retry import RetryPolicy, is_transient
from microservices_sqlalchemy.core.telemetry import instrument_sqlalchemy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Faults caused by the caller rather than the store.
_INVALID_OPERATION_ERRORS = (
    sa_exc.ArgumentError,
    sa_exc.CompileError,
    sa_exc.InvalidRequestError,
    sa_exc.ProgrammingError,
    sa_exc.DataError,
)


def translate_error(error: Exception, operation: str) -> Exception:
    """
    Map a SQLAlchemy exception onto the persistence error taxonomy.

    Errors that are already persistence errors, or that are not SQLAlchemy
    errors at all, are returned unchanged.
    """
    if isinstance(error, PersistenceError):
        return error
    details = {"operation": operation, "error": str(error)}
    if isinstance(error, sa_exc.IntegrityError):
        return ConstraintViolationError(f"Constraint violated during {operation}", details)
    if is_transient(error):
        return TransientStorageError(f"Storage unavailable during {operation}", details)
    if isinstance(error, _INVALID_OPERATION_ERRORS):
        return InvalidOperationError(f"Invalid {operation}: {error}", details)
    return error


def create_engine_from_settings(
    settings: Settings, connection_string: str | None = None
) -> AsyncEngine:
    """
    Create the async engine.

    Connection health checks via pool_pre_ping. Bound parameters only appear
    in logs and error messages in development.
    """
    url = connection_string or settings.database_url
    if not url:
        raise RuntimeError("DATABASE_URL is required")

    hide_parameters = not settings.app_env.is_development

    if url.startswith("sqlite"):
        # A pool of one shared connection keeps in-memory databases alive
        kwargs: dict[str, Any] = {}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return create_async_engine(url, hide_parameters=hide_parameters, echo=False, **kwargs)

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
        hide_parameters=hide_parameters,
        echo=False,
    )


class DatabaseEngine:
    """
    Process-scoped database resources.

    Attributes:
        engine: Async SQLAlchemy engine
        sessionmaker: Factory for request-scoped sessions
        retry_policy: Retry-on-failure policy shared by every context
    """

    def __init__(
        self,
        settings: Settings,
        connection_string: str | None = None,
        retry_policy: RetryPolicy | None = None,
        engine: AsyncEngine | None = None,
    ):
        self.settings = settings
        self.engine = engine or create_engine_from_settings(settings, connection_string)
        self.sessionmaker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_retry_count=settings.db_max_retry_count,
            max_retry_delay=settings.db_max_retry_delay,
        )
        instrument_sqlalchemy(self.engine.sync_engine, settings)

    async def ping(self) -> None:
        """Round-trip a trivial statement; raises if the store is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        """Dispose the connection pool."""
        await self.engine.dispose()
        logger.info("Database engine disposed")


class DbContext:
    """
    Unit of work over one `AsyncSession`.

    Not safe for concurrent use: run one operation at a time per context.
    Pending inserts/updates/deletes are written by `save_changes()`;
    closing the context without saving discards them.
    """

    def __init__(self, database: DatabaseEngine):
        self.database = database
        self.session: AsyncSession = database.sessionmaker()

    @property
    def has_pending_changes(self) -> bool:
        session = self.session
        return bool(session.new or session.dirty or session.deleted)

    @property
    def can_retry(self) -> bool:
        """
        True while a rollback would lose nothing: no pending changes and no
        loaded entities, which a rollback expires.
        """
        return not self.has_pending_changes and not self.session.sync_session.identity_map

    async def execute(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """
        Run a storage operation under the retry policy.

        Transient failures are retried only while the session holds no
        pending changes and no loaded entities; the session is rolled back
        before each retry.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt
            name: Operation name for metrics and logs

        Returns:
            The operation result

        Raises:
            TransientStorageError: Retries exhausted, or not retryable
            ConstraintViolationError: Integrity violation
            InvalidOperationError: Statement rejected as invalid
        """

        async def _before_retry() -> None:
            metrics.db_retries_total.labels(operation=name).inc()
            await self.session.rollback()

        with track_db_operation(name):
            try:
                return await self.database.retry_policy.run(
                    operation,
                    can_retry=lambda: self.can_retry,
                    before_retry=_before_retry,
                    name=name,
                )
            except Exception as e:
                translated = translate_error(e, name)
                if translated is e:
                    raise
                raise translated from e

    async def save_changes(self) -> None:
        """
        Commit pending changes.

        The session is rolled back when the commit fails, so the context
        stays usable.
        """
        with track_db_operation("save_changes"):
            try:
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                translated = translate_error(e, "save_changes")
                logger.warning(
                    f"Commit failed: {type(e).__name__}",
                    extra={"error": str(e)},
                )
                if translated is e:
                    raise
                raise translated from e

    async def rollback(self) -> None:
        await self.session.rollback()

    async def close(self) -> None:
        """Release the session; uncommitted changes are discarded."""
        await self.session.close()
