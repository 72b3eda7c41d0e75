"""
Error taxonomy for the persistence layer.

Driver exceptions are translated into these types by `classify_error` so
that the retry harness can tell failures worth retrying from failures that
will never succeed with the same input.
"""

import sqlite3


class PersistenceError(Exception):
    """Base class for all persistence failures."""

    transient = False

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class StoreConnectionError(PersistenceError, ConnectionError):
    """No live connection to the store, or the store could not be opened."""


class TransientStoreError(PersistenceError):
    """Lock contention, timeout or connection blip. Safe to retry."""

    transient = True


class ConstraintViolation(PersistenceError):
    """Uniqueness, foreign-key or check constraint rejected a write."""


class TransactionError(PersistenceError):
    """BEGIN, COMMIT or ROLLBACK itself failed."""


# sqlite3 exposes the primary result code name on 3.11+; extended codes
# share the primary prefix (SQLITE_BUSY_TIMEOUT, SQLITE_IOERR_READ, ...).
TRANSIENT_ERROR_CODES = ("SQLITE_BUSY", "SQLITE_LOCKED", "SQLITE_IOERR", "SQLITE_PROTOCOL")

TRANSIENT_MESSAGES = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "disk i/o error",
)

CLOSED_MESSAGES = (
    "cannot operate on a closed database",
    "closed database",
)


def is_transient(exc: BaseException) -> bool:
    """Return True if retrying the same operation may succeed."""
    if isinstance(exc, PersistenceError):
        return exc.transient
    if isinstance(exc, (TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        code = getattr(exc, "sqlite_errorname", None) or ""
        if code.startswith(TRANSIENT_ERROR_CODES):
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in TRANSIENT_MESSAGES)
    return False


def classify_error(exc: BaseException) -> PersistenceError:
    """Map a driver (or unit-of-work) exception onto the persistence taxonomy."""
    if isinstance(exc, PersistenceError):
        return exc

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolation(message, exc)
    if is_transient(exc):
        return TransientStoreError(message, exc)
    if isinstance(exc, sqlite3.ProgrammingError) and any(
        fragment in message.lower() for fragment in CLOSED_MESSAGES
    ):
        return StoreConnectionError(message, exc)
    return PersistenceError(message, exc)
