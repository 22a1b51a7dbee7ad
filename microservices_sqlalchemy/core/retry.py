"""
Retry-on-failure policy for database operations.

Transient failures (dropped connections, pool timeouts, operational errors
raised by the driver) are retried with randomized exponential backoff up to
a bounded number of attempts. Everything else propagates on the first
failure. Cancellation is never retried.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy import exc as sa_exc
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from microservices_sqlalchemy.core.errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRY_COUNT = 6
DEFAULT_MAX_RETRY_DELAY = 30.0
DEFAULT_MIN_RETRY_DELAY = 0.1


def is_transient(error: BaseException) -> bool:
    """
    Return True if the error belongs to the connectivity/timeout class.

    Integrity errors are OperationalError-adjacent DBAPI errors in some
    drivers, so they are excluded explicitly.
    """
    if isinstance(error, sa_exc.IntegrityError):
        return False
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, (sa_exc.OperationalError, sa_exc.TimeoutError)):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


class RetryPolicy:
    """
    Bounded retry policy applied by `DbContext.execute`.

    Attributes:
        max_retry_count: Retries after the first attempt (0 disables retrying)
        max_retry_delay: Upper bound for a single backoff sleep, in seconds
        min_retry_delay: Backoff multiplier, in seconds
    """

    def __init__(
        self,
        max_retry_count: int = DEFAULT_MAX_RETRY_COUNT,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        min_retry_delay: float = DEFAULT_MIN_RETRY_DELAY,
        is_transient_error: Callable[[BaseException], bool] = is_transient,
    ):
        if max_retry_count < 0:
            raise ValueError("max_retry_count must not be negative")
        self.max_retry_count = max_retry_count
        self.max_retry_delay = max_retry_delay
        self.min_retry_delay = min_retry_delay
        self.is_transient_error = is_transient_error

    def _retrying(self, can_retry: Callable[[], bool], name: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Retrying {name} in {delay:.2f}s after attempt "
                f"{retry_state.attempt_number} failed: {type(error).__name__}",
                extra={
                    "operation": name,
                    "attempt": retry_state.attempt_number,
                    "error": str(error),
                },
            )

        return AsyncRetrying(
            retry=retry_if_exception(lambda e: self.is_transient_error(e) and can_retry()),
            stop=stop_after_attempt(self.max_retry_count + 1),
            wait=wait_random_exponential(
                multiplier=self.min_retry_delay, max=self.max_retry_delay
            ),
            before_sleep=log_retry,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        can_retry: Callable[[], bool] = lambda: True,
        before_retry: Callable[[], Awaitable[None]] | None = None,
        name: str = "operation",
    ) -> T:
        """
        Run `operation`, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            can_retry: Evaluated after a transient failure; False surfaces it
            before_retry: Awaited after a transient failure, before the next attempt
            name: Operation name used in log messages

        Returns:
            The operation result

        Raises:
            TransientStorageError: If every attempt failed transiently
        """
        try:
            async for attempt in self._retrying(can_retry, name):
                with attempt:
                    try:
                        return await operation()
                    except Exception as e:
                        if (
                            before_retry is not None
                            and self.is_transient_error(e)
                            and can_retry()
                        ):
                            await before_retry()
                        raise
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                f"Giving up on {name} after {e.last_attempt.attempt_number} attempts",
                extra={"operation": name, "error": str(last_error)},
            )
            raise TransientStorageError(
                f"Storage unavailable while executing {name}",
                details={"attempts": e.last_attempt.attempt_number},
            ) from last_error
        raise AssertionError("unreachable")  # pragma: no cover
