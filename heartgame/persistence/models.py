"""
Data models for database operations.

These are simple dataclasses that map to database rows. Timestamps are
kept as timezone-aware UTC datetimes in Python and as fixed-width
ISO-8601 text in the store, so text order matches chronological order.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime for storage. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a stored timestamp, including SQLite's CURRENT_TIMESTAMP format."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def validate_username(username: str) -> None:
    """Raise ValueError if the username cannot be stored."""
    if not username or not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValueError(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )


@dataclass
class Account:
    """
    Database representation of a player identity.

    Password accounts carry a bcrypt `password_hash`; externally
    authenticated accounts carry a `provider`/`external_id` pair instead.
    """
    username: str
    password_hash: str | None = None
    email: str | None = None
    provider: str | None = None
    external_id: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_external(self) -> bool:
        return self.provider is not None and self.external_id is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Account":
        """Create from database row."""
        return cls(
            id=row["id"],
            username=row["username"],
            password_hash=row["password_hash"],
            email=row["email"],
            provider=row["provider"],
            external_id=row["external_id"],
            created_at=from_timestamp(row["created_at"]),
            last_login=from_timestamp(row["last_login"])
        )


@dataclass
class GameSession:
    """
    One completed play-through.

    `id` and `username` are filled in by the store and are ignored when
    comparing sessions, so a saved session equals its read-back copy.
    """
    account_id: int
    start_time: datetime
    end_time: datetime
    final_score: int = 0
    questions_answered: int = 0
    id: int | None = field(default=None, compare=False)
    username: str | None = field(default=None, compare=False)

    def __post_init__(self):
        self.start_time = from_timestamp(self.start_time)
        self.end_time = from_timestamp(self.end_time)

    @property
    def duration_seconds(self) -> int:
        """Game duration in whole seconds, or 0 if times are missing."""
        if self.start_time is None or self.end_time is None:
            return 0
        return int((self.end_time - self.start_time).total_seconds())

    def validate(self) -> None:
        """Raise ValueError if the session breaks a storage invariant."""
        if self.start_time is None or self.end_time is None:
            raise ValueError("Session start and end times are required")
        if self.end_time < self.start_time:
            raise ValueError("Session end time precedes its start time")
        if self.final_score < 0:
            raise ValueError("Final score cannot be negative")
        if self.questions_answered < 0:
            raise ValueError("Questions answered cannot be negative")

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "GameSession":
        """Create from database row (optionally joined with accounts)."""
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            username=row.get("username"),
            start_time=from_timestamp(row["start_time"]),
            end_time=from_timestamp(row["end_time"]),
            final_score=row["final_score"],
            questions_answered=row["questions_answered"]
        )
