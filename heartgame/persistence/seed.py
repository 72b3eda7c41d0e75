"""
Seed data for first-run bootstrap.

A seed source is either an iterable of statements (plain SQL strings or
`(sql, params)` pairs) or a path to a backup artifact: a text file of
`;`-terminated SQL statements such as the one written by `export_backup`.
"""

import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Sequence, Union

from heartgame.persistence.models import to_timestamp, utc_now
from heartgame.persistence.passwords import hash_password


logger = logging.getLogger(__name__)


Statement = tuple[str, Sequence[Any]]
SeedSource = Union[Iterable[Union[str, Statement]], os.PathLike, str]

DEFAULT_SEED_PASSWORD = "password123"

DEFAULT_ACCOUNTS = (
    ("admin", "admin@heartgame.local"),
    ("demo", "demo@heartgame.local"),
)

# Statements in a backup artifact that the bootstrap schema already covers
# or that would fight with our own transaction.
SKIPPED_PREFIXES = ("BEGIN", "COMMIT", "PRAGMA", "CREATE")


def default_seed(rounds: int | None = None) -> list[Statement]:
    """Demo accounts with freshly hashed passwords."""
    now = to_timestamp(utc_now())
    return [
        (
            "INSERT INTO accounts (username, password_hash, email, created_at) "
            "VALUES (?, ?, ?, ?)",
            (username, hash_password(DEFAULT_SEED_PASSWORD, rounds), email, now)
        )
        for username, email in DEFAULT_ACCOUNTS
    ]


def load_seed(source: SeedSource) -> list[Statement]:
    """
    Normalize any seed source into a list of `(sql, params)` pairs.

    A bare string is taken as a single SQL statement when it is a complete
    one, and otherwise as the path of an existing backup file.
    """
    if isinstance(source, os.PathLike):
        return read_backup(Path(source))
    if isinstance(source, str):
        if sqlite3.complete_statement(source):
            return [(source.strip(), ())]
        if Path(source).is_file():
            return read_backup(Path(source))
        raise ValueError(
            f"Seed string is neither an existing file nor a complete SQL statement: {source!r}"
        )

    statements = []
    for item in source:
        if isinstance(item, str):
            statements.append((item, ()))
        else:
            sql, params = item
            statements.append((sql, tuple(params)))
    return statements


def read_backup(path: Path) -> list[Statement]:
    """Split a backup artifact into individual statements."""
    statements = []
    buffer = ""

    with path.open(encoding="utf-8") as backup:
        for line in backup:
            if not buffer and (not line.strip() or line.lstrip().startswith("--")):
                continue
            buffer += line
            if sqlite3.complete_statement(buffer):
                statement = buffer.strip()
                buffer = ""
                if _is_data_statement(statement):
                    statements.append((statement, ()))

    if buffer.strip():
        logger.warning(f"Ignoring incomplete trailing statement in {path}")

    logger.debug(f"Read {len(statements)} statements from {path}")
    return statements


def _is_data_statement(statement: str) -> bool:
    normalized = statement.upper()
    if normalized.startswith(SKIPPED_PREFIXES):
        return False
    return "SQLITE_SEQUENCE" not in normalized.split("VALUES", 1)[0]
