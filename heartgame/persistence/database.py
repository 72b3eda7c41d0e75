"""
Database connection management and initialization.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

from heartgame.config import settings
from heartgame.persistence.errors import (
    PersistenceError,
    StoreConnectionError,
    TransactionError,
    classify_error,
)
from heartgame.persistence.seed import SeedSource, default_seed, load_seed


logger = logging.getLogger(__name__)


MEMORY_DATABASE = ":memory:"


@dataclass(frozen=True)
class ConnectionConfig:
    """Where the store lives and how long the driver may wait on a lock."""
    database_path: str | Path
    database_name: str = "heartgame"
    timeout: float = 30.0

    @property
    def is_memory(self) -> bool:
        return str(self.database_path) == MEMORY_DATABASE

    @classmethod
    def from_settings(cls) -> "ConnectionConfig":
        """Build a config from the environment-backed settings."""
        return cls(
            database_path=settings.DATABASE_PATH,
            database_name=settings.DATABASE_NAME,
            timeout=settings.DATABASE_TIMEOUT
        )


class ConnectionManager:
    """
    Owner of the single shared SQLite connection.

    Repositories borrow the connection through `connection` and
    `transaction()` but never close or replace it. The manager can be
    constructed and injected explicitly, or shared process-wide through
    `get_instance()`.

    Lifecycle:
        manager = ConnectionManager()
        manager.connect(config)
        manager.bootstrap_if_empty()
        ...
        manager.shutdown()
    """

    _instance: "ConnectionManager | None" = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self._config: ConnectionConfig | None = None
        self._connection: sqlite3.Connection | None = None
        # Guards BEGIN/COMMIT/ROLLBACK and handle replacement.
        self.transaction_lock = threading.RLock()
        self._savepoint_depth = 0

    @classmethod
    def get_instance(cls) -> "ConnectionManager":
        """Get or create the process-wide manager."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    @property
    def config(self) -> ConnectionConfig | None:
        return self._config

    @property
    def connection(self) -> sqlite3.Connection:
        """The live connection, or StoreConnectionError when there is none."""
        conn = self._connection
        if conn is None:
            raise StoreConnectionError("Cannot query database. No connection available.")
        return conn

    def connect(self, config: ConnectionConfig | None = None) -> None:
        """
        Open the store connection.

        Raises StoreConnectionError if the database cannot be opened. No
        retry is attempted here; callers choose their own policy.
        """
        config = config or self._config or ConnectionConfig.from_settings()
        conn = self._create_connection(config)

        with self.transaction_lock:
            previous = self._connection
            self._connection = conn
            self._config = config
            self._savepoint_depth = 0

        if previous is not None:
            logger.warning(f"Replaced existing connection to '{config.database_name}'")
            previous.close()

        logger.info(f"Connected to database '{config.database_name}' at {config.database_path}")

    def _create_connection(self, config: ConnectionConfig) -> sqlite3.Connection:
        """Create a new database connection with optimal settings."""
        conn = None
        try:
            if not config.is_memory:
                Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)

            # isolation_level=None leaves transaction control to transaction()
            conn = sqlite3.connect(
                str(config.database_path),
                timeout=config.timeout,
                check_same_thread=False,
                isolation_level=None
            )
            conn.execute("PRAGMA foreign_keys = ON")
            if not config.is_memory:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.row_factory = sqlite3.Row
            conn.execute("SELECT 1").fetchone()
            return conn
        except (sqlite3.Error, OSError) as e:
            if conn is not None:
                conn.close()
            logger.error(f"Failed to connect to database '{config.database_name}': {e}")
            raise StoreConnectionError(
                f"Failed to connect to database at {config.database_path}: {e}", e
            ) from e

    def is_connected(self) -> bool:
        """Whether a connection handle exists. Does not touch the store."""
        return self._connection is not None

    def is_healthy(self) -> bool:
        """Whether the connection exists and answers a trivial query."""
        conn = self._connection
        if conn is None:
            return False
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Connection health check failed: {e}")
            return False

    def reconnect(self) -> bool:
        """
        Replace a live (possibly broken) connection with a fresh one.

        Returns success. A manager that was shut down stays closed until
        `connect()` is called again.
        """
        with self.transaction_lock:
            if self._config is None:
                logger.error("Cannot reconnect: connect() was never called")
                return False
            if self._connection is None:
                logger.error("Cannot reconnect: connection was shut down")
                return False
            try:
                self.connect(self._config)
                return True
            except StoreConnectionError:
                return False

    def shutdown(self) -> None:
        """Close the connection. Waits for any in-flight transaction."""
        with self.transaction_lock:
            conn = self._connection
            self._connection = None
            self._savepoint_depth = 0

        if conn is not None:
            conn.close()
            name = self._config.database_name if self._config else "database"
            logger.info(f"Connection to '{name}' closed")

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block inside a transaction on the shared connection.

        Usage:
            with manager.transaction() as conn:
                conn.execute("INSERT ...")

        Commits when the block exits normally and rolls back when it
        raises. Nested use from the same thread becomes a savepoint inside
        the outer transaction. The lock is released and the connection is
        back in autocommit mode on every exit path.
        """
        with self.transaction_lock:
            conn = self.connection
            if conn.in_transaction and self._savepoint_depth > 0:
                with self._savepoint(conn):
                    yield conn
                return

            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                error = classify_error(e)
                if not error.transient:
                    error = TransactionError(f"Failed to begin transaction: {e}", e)
                raise error from e

            self._savepoint_depth = 1
            try:
                yield conn
            except BaseException as e:
                failure = self._rollback(conn)
                if failure is not None:
                    raise failure from e
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    logger.error(f"Failed to commit transaction: {e}")
                    self._rollback(conn)
                    raise TransactionError(f"Failed to commit transaction: {e}", e) from e
            finally:
                self._savepoint_depth = 0
                if conn.in_transaction:
                    self._rollback(conn)

    @contextmanager
    def _savepoint(self, conn: sqlite3.Connection) -> Generator[None, None, None]:
        name = f"sp_{self._savepoint_depth}"
        conn.execute(f"SAVEPOINT {name}")
        self._savepoint_depth += 1
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")
        finally:
            self._savepoint_depth -= 1

    def _rollback(self, conn: sqlite3.Connection) -> TransactionError | None:
        """Roll back the open transaction. Returns the failure, if any."""
        if not conn.in_transaction:
            return None
        try:
            conn.execute("ROLLBACK")
            logger.debug("Transaction rolled back")
            return None
        except sqlite3.Error as e:
            logger.error(f"Failed to rollback transaction: {e}")
            return TransactionError(f"Failed to rollback transaction: {e}", e)

    # =========================================================================
    # Schema Bootstrap
    # =========================================================================

    def bootstrap_if_empty(self, seed_source: SeedSource | None = None) -> bool:
        """
        Create the schema and load seed data, but only into an empty store.

        The accounts table decides: if it is missing or has no rows, the
        schema and then the seed are applied in a single transaction. A
        populated store is left untouched so accounts and sessions created
        at runtime survive restarts. Returns True if seeding happened.

        Not safe against concurrent bootstrap from several processes.
        """
        if not self._accounts_empty():
            logger.info("Database already populated, skipping bootstrap")
            return False

        statements = load_seed(seed_source) if seed_source is not None else default_seed()

        try:
            with self.transaction() as conn:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
                for sql, params in statements:
                    conn.execute(sql, params)
        except sqlite3.Error as e:
            logger.error(f"Bootstrap failed: {e}")
            raise classify_error(e) from e

        counts = self.table_counts()
        logger.info(
            f"Bootstrapped database with {counts['accounts']} accounts "
            f"and {counts['sessions']} sessions"
        )
        return True

    def _accounts_empty(self) -> bool:
        conn = self.connection
        try:
            if not self._table_exists(conn, "accounts"):
                return True
            row = conn.execute("SELECT EXISTS (SELECT 1 FROM accounts) AS populated").fetchone()
            return not row["populated"]
        except sqlite3.Error as e:
            raise classify_error(e) from e

    @staticmethod
    def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,)
        ).fetchone()
        return row is not None

    def table_counts(self) -> dict[str, int]:
        """Row counts for the accounts and sessions tables (0 if missing)."""
        conn = self.connection
        counts = {}
        for table in ("accounts", "sessions"):
            if self._table_exists(conn, table):
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            else:
                counts[table] = 0
        return counts


SCHEMA_STATEMENTS = (
    # Accounts: password credential XOR external identity
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE CHECK (length(username) BETWEEN 3 AND 50),
        password_hash TEXT,
        email TEXT,
        provider TEXT,
        external_id TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        last_login TIMESTAMP,

        UNIQUE (provider, external_id),
        CHECK ((password_hash IS NOT NULL)
               + (provider IS NOT NULL AND external_id IS NOT NULL) = 1)
    )
    """,
    # Sessions: one row per completed play-through, never updated
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        start_time TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        end_time TIMESTAMP,
        final_score INTEGER NOT NULL DEFAULT 0 CHECK (final_score >= 0),
        questions_answered INTEGER NOT NULL DEFAULT 0 CHECK (questions_answered >= 0),

        CHECK (end_time IS NULL OR end_time >= start_time),
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_account_id ON sessions(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_score ON sessions(final_score DESC, end_time)",
)


def get_connection_manager() -> ConnectionManager:
    """
    Get the process-wide manager, connecting lazily from settings.

    A failed lazy connect is logged and the unconnected manager is
    returned, so repositories degrade to empty results instead of failing.
    """
    manager = ConnectionManager.get_instance()
    if not manager.is_connected():
        try:
            manager.connect(manager.config or ConnectionConfig.from_settings())
        except PersistenceError:
            logger.error("Continuing without a database connection")
    return manager


def init_connection_manager(config: ConnectionConfig | None = None) -> ConnectionManager:
    """Replace the process-wide manager with a freshly connected one."""
    with ConnectionManager._instance_lock:
        previous = ConnectionManager._instance
        if previous is not None:
            previous.shutdown()
        manager = ConnectionManager()
        manager.connect(config)
        ConnectionManager._instance = manager
    return manager
