"""
Execution harness for repository units of work.

A unit of work is any callable taking the shared `sqlite3.Connection`.
Write paths run it with `run_in_transaction` (atomic, not retried); read
paths and best-effort updates run it with `run_with_retry` (retried on
transient failures, no transaction). Neither method raises: both return an
`OperationResult` carrying the unit's value or the classified error.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from heartgame.config import settings
from heartgame.persistence.database import ConnectionManager, get_connection_manager
from heartgame.persistence.errors import (
    ConstraintViolation,
    PersistenceError,
    StoreConnectionError,
    TransactionError,
    classify_error,
)


logger = logging.getLogger(__name__)


T = TypeVar("T")
UnitOfWork = Callable[[sqlite3.Connection], T]


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a unit of work."""
    ok: bool
    value: T | None = None
    error: PersistenceError | None = None
    attempts: int = 1

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> "OperationResult[T]":
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(
        cls,
        error: PersistenceError | None,
        attempts: int = 1,
        value: T | None = None
    ) -> "OperationResult[T]":
        return cls(ok=False, value=value, error=error, attempts=attempts)

    def value_or(self, default: T) -> T:
        """The unit's value on success, otherwise `default`."""
        return self.value if self.ok else default

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to run a unit and how long to wait between attempts.

    The wait before attempt n+1 is `base_delay * n` seconds.
    """
    max_attempts: int = 3
    base_delay: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY
        )


class _RollbackRequested(Exception):
    """Raised inside a transaction when the unit reports failure."""


class TransactionHarness:
    """
    Runs units of work against the connection owned by a ConnectionManager.

    The same harness is shared by every repository built on one manager.
    """

    def __init__(
        self,
        manager: ConnectionManager | None = None,
        policy: RetryPolicy | None = None
    ):
        self.manager = manager or get_connection_manager()
        self.default_policy = policy or RetryPolicy.from_settings()

    # =========================================================================
    # Transactional Execution
    # =========================================================================

    def run_in_transaction(self, unit: UnitOfWork[T]) -> OperationResult[T]:
        """
        Run `unit` inside a transaction.

        Commits if the unit returns anything other than False; rolls back
        if it returns False or raises. Only one transaction is open on the
        connection at a time; concurrent callers wait on the connection's
        transaction lock.
        """
        if not self.manager.is_connected():
            logger.error("Cannot start transaction. No connection available.")
            return OperationResult.failure(
                StoreConnectionError("Cannot start transaction. No connection available.")
            )

        try:
            with self.manager.transaction() as conn:
                value = unit(conn)
                if value is False:
                    raise _RollbackRequested()
        except _RollbackRequested:
            logger.debug("Unit of work reported failure, transaction rolled back")
            return OperationResult.failure(None, value=False)
        except TransactionError as e:
            logger.error(f"Transaction failed: {e}")
            return OperationResult.failure(e)
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, ConstraintViolation):
                logger.warning(f"Transaction rolled back on constraint violation: {error}")
            else:
                logger.error(f"Error during transaction execution: {error}")
            return OperationResult.failure(error)

        logger.debug("Transaction committed")
        return OperationResult.success(value)

    # =========================================================================
    # Retrying Execution
    # =========================================================================

    def run_with_retry(
        self,
        unit: UnitOfWork[T],
        policy: RetryPolicy | int | None = None,
        *,
        exclusive: bool = False
    ) -> OperationResult[T]:
        """
        Run `unit` up to `policy.max_attempts` times.

        Transient errors (lock contention, timeouts, dropped connections)
        are retried after a short linear backoff, reconnecting first if the
        connection no longer answers. Any other error ends the loop at
        once. An int policy is shorthand for that many attempts.

        With `exclusive=True` each attempt holds the transaction lock, so a
        single-statement write cannot land inside another thread's open
        transaction.
        """
        policy = self._resolve_policy(policy)
        last_error: PersistenceError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if not self.manager.is_connected():
                logger.error("Cannot query database. No connection available.")
                return OperationResult.failure(
                    StoreConnectionError("Cannot query database. No connection available."),
                    attempts=attempt - 1
                )

            try:
                value = self._execute(unit, exclusive)
            except Exception as e:
                error = classify_error(e)
                if not error.transient:
                    logger.error(f"Database operation failed: {error}")
                    return OperationResult.failure(error, attempts=attempt)

                last_error = error
                logger.warning(
                    f"Database operation failed (attempt {attempt}/{policy.max_attempts}): {error}"
                )
                if attempt < policy.max_attempts:
                    if self.manager.is_connected() and not self.manager.is_healthy():
                        self.manager.reconnect()
                    delay = policy.delay_for(attempt)
                    if delay > 0:
                        time.sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Operation succeeded after {attempt - 1} retries")
            return OperationResult.success(value, attempts=attempt)

        logger.error(f"Operation failed after {policy.max_attempts} attempts")
        return OperationResult.failure(last_error, attempts=policy.max_attempts)

    def _execute(self, unit: UnitOfWork[T], exclusive: bool) -> T:
        if exclusive:
            with self.manager.transaction_lock:
                return unit(self.manager.connection)
        return unit(self.manager.connection)

    def _resolve_policy(self, policy: RetryPolicy | int | None) -> RetryPolicy:
        if policy is None:
            return self.default_policy
        if isinstance(policy, int):
            return RetryPolicy(max_attempts=policy, base_delay=self.default_policy.base_delay)
        return policy
