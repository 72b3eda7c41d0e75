"""
Repository for player accounts.

Handles registration, credential checks and external-identity sign-in.
"""

import logging
import sqlite3
from datetime import timedelta

from heartgame.persistence.database import ConnectionManager
from heartgame.persistence.errors import ConstraintViolation
from heartgame.persistence.harness import TransactionHarness
from heartgame.persistence.models import (
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    Account,
    from_timestamp,
    to_timestamp,
    utc_now,
    validate_username,
)
from heartgame.persistence.passwords import hash_password, verify_password


logger = logging.getLogger(__name__)


RECENT_LOGIN_THRESHOLD = timedelta(minutes=5)

# Candidate usernames tried for an external account before giving up
MAX_USERNAME_SUFFIX = 1000

ACCOUNT_COLUMNS = (
    "id, username, password_hash, email, provider, external_id, created_at, last_login"
)


class AccountRepository:
    """
    Repository for account persistence operations.

    Writes go through `run_in_transaction`; lookups go through
    `run_with_retry`. No method raises on store failures: lookups return
    None/False and writes return False/None, with the cause logged.
    """

    def __init__(
        self,
        manager: ConnectionManager | None = None,
        harness: TransactionHarness | None = None,
        bcrypt_rounds: int | None = None
    ):
        self.harness = harness or TransactionHarness(manager)
        self.manager = self.harness.manager
        self.bcrypt_rounds = bcrypt_rounds

    def _degraded(self, operation: str) -> bool:
        if self.manager.is_connected():
            return False
        logger.error(f"Cannot {operation}. No connection available.")
        return True

    # =========================================================================
    # Registration
    # =========================================================================

    def create(self, account: Account, plaintext_password: str | None) -> bool:
        """
        Register a new password account.

        The password is hashed before it reaches the store. On success the
        generated id and creation time are written back onto `account`.
        Fails without writing anything if the username is taken; the UNIQUE
        constraint decides, so concurrent registrations cannot both win.
        """
        if self._degraded("create account"):
            return False

        try:
            validate_username(account.username)
            if account.is_external:
                raise ValueError("Password accounts cannot carry an external identity")
            password_hash = hash_password(plaintext_password, self.bcrypt_rounds)
        except ValueError as e:
            logger.warning(f"Rejected account '{account.username}': {e}")
            return False

        created_at = utc_now()

        def insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO accounts (username, password_hash, email, provider, external_id, created_at)
                VALUES (?, ?, ?, NULL, NULL, ?)
                """,
                (account.username, password_hash, account.email, to_timestamp(created_at))
            )
            return cursor.lastrowid

        result = self.harness.run_in_transaction(insert)
        if not result.ok:
            if isinstance(result.error, ConstraintViolation):
                logger.warning(f"Username '{account.username}' is already taken")
            else:
                logger.error(f"Failed to create account '{account.username}': {result.error}")
            return False

        account.id = result.value
        account.password_hash = password_hash
        account.provider = None
        account.external_id = None
        account.created_at = created_at
        logger.info(f"Account '{account.username}' created successfully")
        return True

    # =========================================================================
    # Lookups
    # =========================================================================

    def find_by_username(self, username: str) -> Account | None:
        """Get an account by exact (case-sensitive) username."""
        return self._find_one("username = ?", (username,), f"username '{username}'")

    def find_by_id(self, account_id: int) -> Account | None:
        """Get an account by id."""
        return self._find_one("id = ?", (account_id,), f"id {account_id}")

    def find_by_external_identity(self, provider: str, external_id: str) -> Account | None:
        """Get the account linked to an external identity provider subject."""
        return self._find_one(
            "provider = ? AND external_id = ?",
            (provider, external_id),
            f"{provider} identity {external_id}"
        )

    def _find_one(self, where: str, params: tuple, description: str) -> Account | None:
        if self._degraded("query accounts"):
            return None

        def query(conn: sqlite3.Connection) -> Account | None:
            row = conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE {where}",
                params
            ).fetchone()
            return Account.from_row(dict(row)) if row else None

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error finding account by {description}: {result.error}")
            return None
        if result.value is None:
            logger.debug(f"Account with {description} not found")
        return result.value

    def username_exists(self, username: str) -> bool:
        """Check whether a username is taken (case-sensitive)."""
        if self._degraded("query accounts"):
            return False

        def query(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM accounts WHERE username = ?) AS taken",
                (username,)
            ).fetchone()
            return bool(row["taken"])

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error checking username '{username}': {result.error}")
        return result.value_or(False)

    # =========================================================================
    # Authentication
    # =========================================================================

    def verify_password(self, username: str, plaintext_password: str) -> bool:
        """
        Check a username/password pair.

        Returns False for unknown users, empty passwords, wrong passwords
        and accounts that sign in through an external provider.
        """
        if not plaintext_password:
            logger.warning(f"Empty password supplied for '{username}'")
            return False
        if self._degraded("verify password"):
            return False

        def query(conn: sqlite3.Connection) -> tuple[bool, str | None]:
            row = conn.execute(
                "SELECT password_hash FROM accounts WHERE username = ?",
                (username,)
            ).fetchone()
            if row is None:
                return False, None
            return True, row["password_hash"]

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error during authentication for '{username}': {result.error}")
            return False

        found, password_hash = result.value
        if not found:
            logger.warning(f"Authentication failed: user '{username}' not found")
            return False
        if password_hash is None:
            logger.warning(f"User '{username}' has no password (external account)")
            return False

        authenticated = verify_password(plaintext_password, password_hash)
        if authenticated:
            logger.info(f"User '{username}' authenticated successfully")
        else:
            logger.warning(f"Authentication failed for user '{username}'")
        return authenticated

    def record_authentication(self, account_id: int) -> bool:
        """
        Stamp the account's last login with the current time.

        Best effort: a failure is logged and reported, but callers should
        not let it change their authentication decision. Logs a warning when
        the previous login is recent enough to suggest a second session.
        """
        if self._degraded("record authentication"):
            return False

        now = utc_now()

        def update(conn: sqlite3.Connection) -> tuple[int, str | None]:
            row = conn.execute(
                "SELECT last_login FROM accounts WHERE id = ?",
                (account_id,)
            ).fetchone()
            previous = row["last_login"] if row else None
            cursor = conn.execute(
                "UPDATE accounts SET last_login = ? WHERE id = ?",
                (to_timestamp(now), account_id)
            )
            return cursor.rowcount, previous

        result = self.harness.run_with_retry(update, exclusive=True)
        if not result.ok:
            logger.error(f"Failed to update last login for account {account_id}: {result.error}")
            return False

        updated, previous = result.value
        if not updated:
            logger.warning(f"Failed to update last login: account {account_id} not found")
            return False

        previous_login = from_timestamp(previous)
        if previous_login is not None and now - previous_login < RECENT_LOGIN_THRESHOLD:
            minutes = int(RECENT_LOGIN_THRESHOLD.total_seconds() // 60)
            logger.warning(
                f"Multi-session detected: account {account_id} logged in within the last {minutes} minutes"
            )
        logger.debug(f"Updated last login for account {account_id}")
        return True

    # =========================================================================
    # External Identity
    # =========================================================================

    def upsert_external_account(
        self,
        username: str,
        email: str | None,
        provider: str,
        external_id: str
    ) -> Account | None:
        """
        Find or create the account for an external identity.

        An existing account has its email refreshed. A new account gets no
        password and the requested username, or the first free variant with
        a numeric suffix if it is taken. The unique (provider, external_id)
        index turns a concurrent duplicate insert into an email refresh.
        """
        if not provider or not external_id:
            logger.warning("External sign-in requires a provider and an external id")
            return None
        if self._degraded("upsert external account"):
            return None

        base_username = _username_base(username or email or f"{provider}_{external_id}")

        def upsert(conn: sqlite3.Connection) -> Account:
            existing = conn.execute(
                "SELECT id FROM accounts WHERE provider = ? AND external_id = ?",
                (provider, external_id)
            ).fetchone()

            if existing is not None:
                conn.execute(
                    "UPDATE accounts SET email = ? WHERE id = ?",
                    (email, existing["id"])
                )
            else:
                candidate = _free_username(conn, base_username)
                conn.execute(
                    """
                    INSERT INTO accounts (username, password_hash, email, provider, external_id, created_at)
                    VALUES (?, NULL, ?, ?, ?, ?)
                    ON CONFLICT (provider, external_id) DO UPDATE SET email = excluded.email
                    """,
                    (candidate, email, provider, external_id, to_timestamp(utc_now()))
                )

            row = conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE provider = ? AND external_id = ?",
                (provider, external_id)
            ).fetchone()
            return Account.from_row(dict(row))

        result = self.harness.run_in_transaction(upsert)
        if not result.ok:
            logger.error(f"Failed to upsert {provider} account {external_id}: {result.error}")
            return None

        logger.info(f"{provider} account '{result.value.username}' signed in")
        return result.value


def _username_base(name: str) -> str:
    """Derive a storable username from a display name or email address."""
    base = name.split("@", 1)[0].strip() or "player"
    if len(base) < USERNAME_MIN_LENGTH:
        base = base.ljust(USERNAME_MIN_LENGTH, "_")
    return base[:USERNAME_MAX_LENGTH]


def _free_username(conn: sqlite3.Connection, base: str) -> str:
    """First of `base`, `base1`, `base2`, ... not already taken."""
    for suffix in range(MAX_USERNAME_SUFFIX):
        tail = str(suffix) if suffix else ""
        candidate = base[:USERNAME_MAX_LENGTH - len(tail)] + tail
        taken = conn.execute(
            "SELECT 1 FROM accounts WHERE username = ?",
            (candidate,)
        ).fetchone()
        if taken is None:
            return candidate
    raise ValueError(f"No free username derived from '{base}'")
