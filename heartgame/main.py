"""
Command-line entry point for HeartGame database maintenance.

Usage:
    python -m heartgame.main bootstrap [--seed-file PATH]
    python -m heartgame.main export PATH
    python -m heartgame.main stats
"""

import argparse
import logging
import sys
from pathlib import Path

from heartgame.config import settings
from heartgame.persistence import (
    ConnectionConfig,
    PersistenceError,
    SessionRepository,
    export_backup,
    init_connection_manager,
)


logger = logging.getLogger(__name__)


def cmd_bootstrap(args: argparse.Namespace) -> int:
    manager = init_connection_manager(ConnectionConfig.from_settings())
    try:
        seed_file = args.seed_file or settings.DATABASE_SEED_FILE
        seeded = manager.bootstrap_if_empty(Path(seed_file) if seed_file else None)
        counts = manager.table_counts()
        state = "Seeded" if seeded else "Already populated"
        print(f"{state}: {counts['accounts']} accounts, {counts['sessions']} sessions")
    finally:
        manager.shutdown()
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    manager = init_connection_manager(ConnectionConfig.from_settings())
    try:
        rows = export_backup(manager, args.path)
        print(f"Exported {rows} rows to {args.path}")
    finally:
        manager.shutdown()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    manager = init_connection_manager(ConnectionConfig.from_settings())
    try:
        counts = manager.table_counts()
        print(f"Accounts: {counts['accounts']}")
        print(f"Sessions: {counts['sessions']}")

        sessions = SessionRepository(manager)
        top = sessions.top_scores(args.limit)
        if top:
            print(f"\nTop {len(top)} scores:")
        for rank, session in enumerate(top, start=1):
            print(
                f"{rank:>3}. {session.username:<20} {session.final_score:>5} "
                f"({session.questions_answered} answered, {session.duration_seconds}s)"
            )
    finally:
        manager.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HeartGame database maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap = subparsers.add_parser("bootstrap", help="Create schema and seed an empty database")
    bootstrap.add_argument("--seed-file", type=Path, help="Backup artifact to seed from")
    bootstrap.set_defaults(handler=cmd_bootstrap)

    export = subparsers.add_parser("export", help="Write accounts and sessions to a backup file")
    export.add_argument("path", type=Path)
    export.set_defaults(handler=cmd_export)

    stats = subparsers.add_parser("stats", help="Show row counts and the leaderboard")
    stats.add_argument("--limit", type=int, default=10)
    stats.set_defaults(handler=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the maintenance CLI."""
    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except PersistenceError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
