"""
Tests for the account and session repositories.

Run with: python3 tests/test_persistence/test_repositories.py
"""

import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from heartgame.persistence import (
    Account,
    AccountRepository,
    ConnectionConfig,
    ConnectionManager,
    GameSession,
    RetryPolicy,
    SessionRepository,
    TransactionHarness,
)


TEST_ROUNDS = 4
BASE_TIME = datetime(2025, 11, 19, 17, 0, tzinfo=timezone.utc)


class RepositoryTestCase(unittest.TestCase):
    """Base test case with an empty schema and both repositories."""

    def setUp(self):
        """Create a temporary database for each test."""
        self.temp_file = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.db_path = self.temp_file.name
        self.temp_file.close()

        self.manager = ConnectionManager()
        self.manager.connect(ConnectionConfig(self.db_path, database_name="test"))
        self.manager.bootstrap_if_empty([])

        harness = TransactionHarness(self.manager, RetryPolicy(max_attempts=3, base_delay=0))
        self.accounts = AccountRepository(self.manager, harness, bcrypt_rounds=TEST_ROUNDS)
        self.sessions = SessionRepository(self.manager, harness)

    def tearDown(self):
        """Clean up the temporary database."""
        self.manager.shutdown()
        for suffix in ("", "-wal", "-shm"):
            Path(self.db_path + suffix).unlink(missing_ok=True)

    def create_account(self, username: str = "alice", password: str = "secret1") -> Account:
        """Create and save a password account."""
        account = Account(username=username, email=f"{username}@heartgame.local")
        self.assertTrue(self.accounts.create(account, password))
        return account

    def make_session(
        self,
        account: Account,
        score: int,
        ended_minutes: int = 1,
        answered: int | None = None
    ) -> GameSession:
        """Build a one-minute session ending `ended_minutes` after BASE_TIME."""
        end = BASE_TIME + timedelta(minutes=ended_minutes)
        return GameSession(
            account_id=account.id,
            start_time=end - timedelta(minutes=1),
            end_time=end,
            final_score=score,
            questions_answered=score + 2 if answered is None else answered
        )


class TestAccountCreation(RepositoryTestCase):
    """Test account registration."""

    def test_create_assigns_id(self):
        """Test that create writes the generated id back onto the account."""
        account = self.create_account()

        self.assertIsNotNone(account.id)
        self.assertIsNotNone(account.created_at)

        stored = self.accounts.find_by_username("alice")
        self.assertEqual(stored.id, account.id)
        self.assertEqual(stored.email, "alice@heartgame.local")
        self.assertIsNone(stored.last_login)

    def test_password_is_hashed(self):
        """Test that the plaintext password never reaches the store."""
        self.create_account(password="secret1")

        stored = self.accounts.find_by_username("alice")
        self.assertNotEqual(stored.password_hash, "secret1")
        self.assertTrue(stored.password_hash.startswith("$2"))

    def test_duplicate_username_rejected(self):
        """Test that a second account with the same username fails."""
        self.create_account()

        duplicate = Account(username="alice")
        self.assertFalse(self.accounts.create(duplicate, "other"))
        self.assertIsNone(duplicate.id)

        count = self.manager.connection.execute(
            "SELECT COUNT(*) FROM accounts WHERE username = 'alice'"
        ).fetchone()[0]
        self.assertEqual(count, 1)

    def test_concurrent_duplicate_creation(self):
        """Test that racing registrations for one username yield one row."""
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def register():
            barrier.wait()
            created = self.accounts.create(Account(username="racer"), "secret1")
            with lock:
                results.append(created)

        threads = [threading.Thread(target=register) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(results.count(False), 7)
        count = self.manager.connection.execute(
            "SELECT COUNT(*) FROM accounts WHERE username = 'racer'"
        ).fetchone()[0]
        self.assertEqual(count, 1)

    def test_username_length_limits(self):
        """Test that usernames outside 3-50 characters are rejected."""
        self.assertFalse(self.accounts.create(Account(username="ab"), "secret1"))
        self.assertFalse(self.accounts.create(Account(username="x" * 51), "secret1"))
        self.assertTrue(self.accounts.create(Account(username="abc"), "secret1"))
        self.assertTrue(self.accounts.create(Account(username="y" * 50), "secret1"))

    def test_empty_password_rejected(self):
        """Test that a password account needs a password."""
        self.assertFalse(self.accounts.create(Account(username="alice"), ""))
        self.assertFalse(self.accounts.create(Account(username="alice"), None))
        self.assertFalse(self.accounts.username_exists("alice"))

    def test_external_identity_rejected_for_password_account(self):
        """Test that an account cannot carry both credentials."""
        account = Account(username="alice", provider="google", external_id="123")
        self.assertFalse(self.accounts.create(account, "secret1"))

    def test_create_without_connection(self):
        """Test that create fails cleanly when the store is down."""
        self.manager.shutdown()
        self.assertFalse(self.accounts.create(Account(username="alice"), "secret1"))


class TestAccountLookup(RepositoryTestCase):
    """Test account queries and credential checks."""

    def test_alice_scenario(self):
        """Test registration followed by the basic lookups."""
        self.create_account("alice", "secret1")

        self.assertTrue(self.accounts.verify_password("alice", "secret1"))
        self.assertFalse(self.accounts.verify_password("alice", "wrong"))
        self.assertTrue(self.accounts.username_exists("alice"))
        self.assertFalse(self.accounts.username_exists("bob"))

    def test_username_is_case_sensitive(self):
        """Test that lookups match usernames exactly."""
        self.create_account("alice")

        self.assertFalse(self.accounts.username_exists("Alice"))
        self.assertIsNone(self.accounts.find_by_username("ALICE"))
        self.assertTrue(self.accounts.create(Account(username="Alice"), "secret2"))

    def test_verify_password_for_many_pairs(self):
        """Test that each password verifies only against its own account."""
        pairs = {"alice": "secret1", "bob": "hunter22", "carol": "päss wörd"}
        for username, password in pairs.items():
            self.create_account(username, password)

        for username, password in pairs.items():
            self.assertTrue(self.accounts.verify_password(username, password))
            for other in pairs.values():
                if other != password:
                    self.assertFalse(self.accounts.verify_password(username, other))

    def test_long_password(self):
        """Test that passwords past bcrypt's 72-byte input are accepted in full."""
        password = "x" * 80
        self.create_account("alice", password)

        self.assertTrue(self.accounts.verify_password("alice", password))
        self.assertFalse(self.accounts.verify_password("alice", "x" * 72))
        self.assertFalse(self.accounts.verify_password("alice", "x" * 79 + "y"))

    def test_verify_unknown_user(self):
        """Test that an unknown username is a plain False."""
        self.assertFalse(self.accounts.verify_password("nobody", "secret1"))

    def test_verify_empty_password(self):
        """Test that an empty password never verifies."""
        self.create_account()
        self.assertFalse(self.accounts.verify_password("alice", ""))

    def test_verify_malformed_hash(self):
        """Test that a corrupt stored hash fails verification quietly."""
        self.manager.connection.execute(
            "INSERT INTO accounts (username, password_hash) VALUES ('broken', 'not-bcrypt')"
        )
        self.assertFalse(self.accounts.verify_password("broken", "secret1"))

    def test_find_nonexistent_account(self):
        """Test lookups that match nothing."""
        self.assertIsNone(self.accounts.find_by_username("nobody"))
        self.assertIsNone(self.accounts.find_by_id(12345))
        self.assertIsNone(self.accounts.find_by_external_identity("google", "none"))

    def test_find_by_id(self):
        """Test lookup by generated id."""
        account = self.create_account()
        self.assertEqual(self.accounts.find_by_id(account.id).username, "alice")

    def test_reads_degrade_without_connection(self):
        """Test that lookups return empty results when the store is down."""
        self.create_account()
        self.manager.shutdown()

        self.assertIsNone(self.accounts.find_by_username("alice"))
        self.assertFalse(self.accounts.username_exists("alice"))
        self.assertFalse(self.accounts.verify_password("alice", "secret1"))


class TestAuthentication(RepositoryTestCase):
    """Test last-login bookkeeping."""

    def test_record_authentication(self):
        """Test that a login stamps last_login."""
        account = self.create_account()

        self.assertTrue(self.accounts.record_authentication(account.id))

        stored = self.accounts.find_by_id(account.id)
        self.assertIsNotNone(stored.last_login)
        self.assertLess(abs(datetime.now(timezone.utc) - stored.last_login), timedelta(minutes=1))

    def test_repeat_authentication_logs_multi_session(self):
        """Test that a second login within minutes warns about multiple sessions."""
        account = self.create_account()
        self.accounts.record_authentication(account.id)

        with self.assertLogs("heartgame.persistence.accounts", level="WARNING") as logs:
            self.assertTrue(self.accounts.record_authentication(account.id))

        self.assertTrue(any("Multi-session" in line for line in logs.output))

    def test_record_authentication_unknown_account(self):
        """Test that stamping a missing account reports failure."""
        self.assertFalse(self.accounts.record_authentication(999))

    def test_record_authentication_without_connection(self):
        """Test that a failed stamp does not raise."""
        account = self.create_account()
        self.manager.shutdown()
        self.assertFalse(self.accounts.record_authentication(account.id))


class TestExternalAccounts(RepositoryTestCase):
    """Test find-or-create for externally authenticated accounts."""

    def test_creates_account_without_password(self):
        """Test that a first external sign-in creates a password-less account."""
        account = self.accounts.upsert_external_account(
            "gplayer", "gplayer@example.com", "google", "1074922805"
        )

        self.assertIsNotNone(account)
        self.assertIsNotNone(account.id)
        self.assertEqual(account.username, "gplayer")
        self.assertIsNone(account.password_hash)
        self.assertEqual(account.provider, "google")
        self.assertEqual(account.external_id, "1074922805")

    def test_external_account_cannot_use_password(self):
        """Test that external accounts never pass password verification."""
        self.accounts.upsert_external_account("gplayer", None, "google", "1")
        self.assertFalse(self.accounts.verify_password("gplayer", "anything"))

    def test_second_sign_in_refreshes_email(self):
        """Test that a repeat sign-in finds the same account and updates email."""
        first = self.accounts.upsert_external_account("gplayer", "old@example.com", "google", "1")
        second = self.accounts.upsert_external_account("gplayer", "new@example.com", "google", "1")

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.email, "new@example.com")
        count = self.manager.connection.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
        self.assertEqual(count, 1)

    def test_taken_username_gets_suffix(self):
        """Test that a clashing username is made unique."""
        self.create_account("alice")

        account = self.accounts.upsert_external_account("alice", None, "google", "42")

        self.assertEqual(account.username, "alice1")
        self.assertTrue(self.accounts.verify_password("alice", "secret1"))

    def test_username_derived_from_email(self):
        """Test the fallback when no username is supplied."""
        account = self.accounts.upsert_external_account("", "dragos@example.com", "google", "7")
        self.assertEqual(account.username, "dragos")

    def test_concurrent_upserts_create_one_account(self):
        """Test that racing sign-ins for one identity share a row."""
        barrier = threading.Barrier(6)
        ids = []
        lock = threading.Lock()

        def sign_in(index):
            barrier.wait()
            account = self.accounts.upsert_external_account(
                "gplayer", f"mail{index}@example.com", "google", "99"
            )
            with lock:
                ids.append(account.id)

        threads = [threading.Thread(target=sign_in, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(set(ids)), 1)
        count = self.manager.connection.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
        self.assertEqual(count, 1)

    def test_missing_identity_rejected(self):
        """Test that provider and external id are both required."""
        self.assertIsNone(self.accounts.upsert_external_account("gplayer", None, "google", ""))


class TestSessionWrites(RepositoryTestCase):
    """Test saving game sessions."""

    def test_save_assigns_id(self):
        """Test that save writes the generated id back onto the session."""
        account = self.create_account()
        session = self.make_session(account, 21)

        self.assertTrue(self.sessions.save(session))
        self.assertIsNotNone(session.id)

    def test_save_round_trip(self):
        """Test that a saved session reads back equal apart from its id."""
        account = self.create_account()
        session = self.make_session(account, 17, answered=23)
        self.sessions.save(session)

        loaded = self.sessions.sessions_for_account(account.id)

        self.assertEqual(loaded, [session])
        self.assertEqual(loaded[0].id, session.id)
        self.assertEqual(loaded[0].username, "alice")
        self.assertEqual(loaded[0].start_time, session.start_time)
        self.assertEqual(loaded[0].questions_answered, 23)
        self.assertEqual(loaded[0].duration_seconds, 60)

    def test_save_unknown_account(self):
        """Test that a session for a missing account writes nothing."""
        session = GameSession(
            account_id=999,
            start_time=BASE_TIME,
            end_time=BASE_TIME + timedelta(minutes=1),
            final_score=5
        )

        self.assertFalse(self.sessions.save(session))
        self.assertIsNone(session.id)
        self.assertEqual(self.sessions.total_session_count(), 0)

    def test_save_rejects_invalid_sessions(self):
        """Test end-before-start and negative counters."""
        account = self.create_account()

        backwards = GameSession(account.id, BASE_TIME, BASE_TIME - timedelta(seconds=1), 5, 5)
        negative_score = GameSession(account.id, BASE_TIME, BASE_TIME, -1, 0)
        negative_answers = GameSession(account.id, BASE_TIME, BASE_TIME, 0, -3)

        self.assertFalse(self.sessions.save(backwards))
        self.assertFalse(self.sessions.save(negative_score))
        self.assertFalse(self.sessions.save(negative_answers))
        self.assertEqual(self.sessions.total_session_count(), 0)

    def test_naive_times_taken_as_utc(self):
        """Test that naive datetimes are stored as UTC."""
        account = self.create_account()
        session = GameSession(account.id, datetime(2025, 1, 1, 10, 0), datetime(2025, 1, 1, 10, 5), 3, 4)
        self.sessions.save(session)

        loaded = self.sessions.sessions_for_account(account.id)[0]
        self.assertEqual(loaded.end_time, datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc))

    def test_save_without_connection(self):
        """Test that save fails cleanly when the store is down."""
        account = self.create_account()
        self.manager.shutdown()
        self.assertFalse(self.sessions.save(self.make_session(account, 10)))

    def test_sessions_cascade_with_account(self):
        """Test that deleting an account removes its sessions."""
        account = self.create_account()
        self.sessions.save(self.make_session(account, 10))

        self.manager.connection.execute("DELETE FROM accounts WHERE id = ?", (account.id,))

        self.assertEqual(self.sessions.total_session_count(), 0)


class TestSessionQueries(RepositoryTestCase):
    """Test leaderboard and history queries."""

    def test_scores_scenario(self):
        """Test high score and history order for scores 10, 30, 20."""
        account = self.create_account()
        for minute, score in enumerate([10, 30, 20], start=1):
            self.assertTrue(self.sessions.save(self.make_session(account, score, minute)))

        self.assertEqual(self.sessions.high_score(account.id), 30)
        scores = [s.final_score for s in self.sessions.sessions_for_account(account.id)]
        self.assertEqual(scores, [30, 20, 10])

    def test_account_without_sessions(self):
        """Test that an account with no sessions has zero high score."""
        account = self.create_account()

        self.assertEqual(self.sessions.high_score(account.id), 0)
        self.assertEqual(self.sessions.sessions_for_account(account.id), [])

    def test_top_scores_limit_and_order(self):
        """Test that the leaderboard is capped and sorted by score."""
        alice = self.create_account("alice")
        bob = self.create_account("bob")
        scores = [5, 17, 3, 22, 17, 9, 30, 1, 14, 22, 8, 11]
        for minute, score in enumerate(scores, start=1):
            owner = alice if minute % 2 else bob
            self.sessions.save(self.make_session(owner, score, minute))

        top = self.sessions.top_scores(10)

        self.assertEqual(len(top), 10)
        values = [s.final_score for s in top]
        self.assertEqual(values, sorted(values, reverse=True))
        self.assertEqual(values[0], 30)
        self.assertEqual({s.username for s in top}, {"alice", "bob"})

    def test_top_scores_tie_goes_to_earlier_finish(self):
        """Test that equal scores on the leaderboard rank by end time ascending."""
        alice = self.create_account("alice")
        bob = self.create_account("bob")
        late = self.make_session(alice, 25, ended_minutes=30)
        early = self.make_session(bob, 25, ended_minutes=5)
        self.sessions.save(late)
        self.sessions.save(early)

        top = self.sessions.top_scores()

        self.assertEqual([s.id for s in top], [early.id, late.id])
        self.assertEqual(top[0].username, "bob")

    def test_history_tie_goes_to_most_recent(self):
        """Test that equal scores in a user's history rank by end time descending."""
        account = self.create_account()
        early = self.make_session(account, 25, ended_minutes=5)
        late = self.make_session(account, 25, ended_minutes=30)
        self.sessions.save(early)
        self.sessions.save(late)

        history = self.sessions.sessions_for_account(account.id)

        self.assertEqual([s.id for s in history], [late.id, early.id])

    def test_top_scores_fewer_than_limit(self):
        """Test leaderboards with fewer sessions than the limit."""
        account = self.create_account()
        self.sessions.save(self.make_session(account, 4))

        self.assertEqual(len(self.sessions.top_scores(10)), 1)
        self.assertEqual(self.sessions.top_scores(0), [])

    def test_total_session_count(self):
        """Test the store-wide session count."""
        alice = self.create_account("alice")
        bob = self.create_account("bob")
        self.sessions.save(self.make_session(alice, 1))
        self.sessions.save(self.make_session(bob, 2))
        self.sessions.save(self.make_session(bob, 3, 2))

        self.assertEqual(self.sessions.total_session_count(), 3)

    def test_reads_degrade_without_connection(self):
        """Test that a downed store yields an empty leaderboard, not an error."""
        account = self.create_account()
        self.sessions.save(self.make_session(account, 10))
        self.manager.shutdown()

        self.assertEqual(self.sessions.top_scores(), [])
        self.assertEqual(self.sessions.sessions_for_account(account.id), [])
        self.assertEqual(self.sessions.high_score(account.id), 0)
        self.assertEqual(self.sessions.total_session_count(), 0)


def run_tests():
    """Run all repository tests."""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    test_classes = [
        TestAccountCreation,
        TestAccountLookup,
        TestAuthentication,
        TestExternalAccounts,
        TestSessionWrites,
        TestSessionQueries,
    ]

    for test_class in test_classes:
        suite.addTests(loader.loadTestsFromTestCase(test_class))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return result.wasSuccessful()


if __name__ == "__main__":
    success = run_tests()
    sys.exit(0 if success else 1)
