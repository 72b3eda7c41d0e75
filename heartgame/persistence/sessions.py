"""
Repository for completed game sessions and the leaderboard.
"""

import logging
import sqlite3

from heartgame.persistence.database import ConnectionManager
from heartgame.persistence.errors import ConstraintViolation
from heartgame.persistence.harness import TransactionHarness
from heartgame.persistence.models import GameSession, to_timestamp


logger = logging.getLogger(__name__)


DEFAULT_LEADERBOARD_SIZE = 10

SESSION_SELECT = """
    SELECT s.id, s.account_id, a.username, s.start_time, s.end_time,
           s.final_score, s.questions_answered
    FROM sessions s
    JOIN accounts a ON s.account_id = a.id
"""


class SessionRepository:
    """
    Repository for game session persistence operations.

    Sessions are insert-only. Reads return empty lists or zero when the
    store is unavailable, so a degraded database shows up as an empty
    leaderboard rather than an error.
    """

    def __init__(
        self,
        manager: ConnectionManager | None = None,
        harness: TransactionHarness | None = None
    ):
        self.harness = harness or TransactionHarness(manager)
        self.manager = self.harness.manager

    def _degraded(self, operation: str) -> bool:
        if self.manager.is_connected():
            return False
        logger.error(f"Cannot {operation}. No connection available.")
        return True

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, session: GameSession) -> bool:
        """
        Save a completed session and write its generated id back.

        Returns False, with nothing written, if the session is invalid or
        its account does not exist.
        """
        if self._degraded("save game session"):
            return False

        try:
            session.validate()
        except ValueError as e:
            logger.warning(f"Rejected game session for account {session.account_id}: {e}")
            return False

        def insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO sessions (account_id, start_time, end_time, final_score, questions_answered)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    session.account_id,
                    to_timestamp(session.start_time),
                    to_timestamp(session.end_time),
                    session.final_score,
                    session.questions_answered
                )
            )
            return cursor.lastrowid

        result = self.harness.run_in_transaction(insert)
        if not result.ok:
            if isinstance(result.error, ConstraintViolation):
                logger.warning(
                    f"Game session rejected for account {session.account_id}: {result.error}"
                )
            else:
                logger.error(f"Error saving game session: {result.error}")
            return False

        session.id = result.value
        logger.info(
            f"Game session saved: account_id={session.account_id}, score={session.final_score}"
        )
        return True

    # =========================================================================
    # Leaderboard and History
    # =========================================================================

    def top_scores(self, limit: int = DEFAULT_LEADERBOARD_SIZE) -> list[GameSession]:
        """
        Highest-scoring sessions across all accounts.

        Ties go to the session that finished first.
        """
        if limit <= 0 or self._degraded("load leaderboard"):
            return []

        def query(conn: sqlite3.Connection) -> list[GameSession]:
            cursor = conn.execute(
                SESSION_SELECT + "ORDER BY s.final_score DESC, s.end_time ASC LIMIT ?",
                (limit,)
            )
            return [GameSession.from_row(dict(row)) for row in cursor.fetchall()]

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error retrieving top scores: {result.error}")
            return []

        logger.debug(f"Retrieved {len(result.value)} top scores")
        return result.value

    def sessions_for_account(self, account_id: int) -> list[GameSession]:
        """
        All sessions of one account, best first.

        Ties go to the most recent session, unlike the global leaderboard.
        """
        if self._degraded("load game history"):
            return []

        def query(conn: sqlite3.Connection) -> list[GameSession]:
            cursor = conn.execute(
                SESSION_SELECT + "WHERE s.account_id = ? ORDER BY s.final_score DESC, s.end_time DESC",
                (account_id,)
            )
            return [GameSession.from_row(dict(row)) for row in cursor.fetchall()]

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error retrieving sessions for account {account_id}: {result.error}")
            return []

        logger.debug(f"Retrieved {len(result.value)} sessions for account_id={account_id}")
        return result.value

    def high_score(self, account_id: int) -> int:
        """Best final score of an account, or 0 if it has no sessions."""
        if self._degraded("load high score"):
            return 0

        def query(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COALESCE(MAX(final_score), 0) AS high_score FROM sessions WHERE account_id = ?",
                (account_id,)
            ).fetchone()
            return row["high_score"]

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error retrieving high score for account {account_id}: {result.error}")
        return result.value_or(0)

    def total_session_count(self) -> int:
        """Number of sessions in the store."""
        if self._degraded("count game sessions"):
            return 0

        def query(conn: sqlite3.Connection) -> int:
            return conn.execute("SELECT COUNT(*) AS total FROM sessions").fetchone()["total"]

        result = self.harness.run_with_retry(query)
        if not result.ok:
            logger.error(f"Error retrieving total session count: {result.error}")
        return result.value_or(0)
