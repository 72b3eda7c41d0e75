"""
Backup export.

Writes the accounts and sessions rows as plain INSERT statements. The
result is a seed source: pass its path to `bootstrap_if_empty` to restore
the data into a fresh store.
"""

import logging
from pathlib import Path

from heartgame.persistence.database import ConnectionManager
from heartgame.persistence.models import to_timestamp, utc_now


logger = logging.getLogger(__name__)


# Parents before children so foreign keys hold while restoring
BACKUP_TABLES = ("accounts", "sessions")


def export_backup(manager: ConnectionManager, path: str | Path) -> int:
    """
    Dump accounts and sessions to `path`. Returns the number of rows written.

    Holds the transaction lock for the duration so the dump never sees
    half of another thread's transaction.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    prefixes = {
        table: (f'INSERT INTO "{table}" ', f"INSERT INTO {table} ")
        for table in BACKUP_TABLES
    }
    rows: dict[str, list[str]] = {table: [] for table in BACKUP_TABLES}

    with manager.transaction_lock:
        for line in manager.connection.iterdump():
            for table, prefix in prefixes.items():
                if line.startswith(prefix):
                    rows[table].append(line)
                    break

    name = manager.config.database_name if manager.config else "heartgame"
    total = sum(len(lines) for lines in rows.values())

    with path.open("w", encoding="utf-8") as backup:
        backup.write(f"-- {name} backup exported {to_timestamp(utc_now())}\n")
        for table in BACKUP_TABLES:
            backup.write(f"\n-- {table}: {len(rows[table])} rows\n")
            for line in rows[table]:
                backup.write(line + "\n")

    logger.info(f"Exported {total} rows to {path}")
    return total
