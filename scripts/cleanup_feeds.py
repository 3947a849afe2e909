#!/usr/bin/env python3
"""
Apply feed retention to every feed.

Each feed keeps its newest min_items, drops items older than max_age_days
and is then capped at max_items. The background workers do this after every
insert; this script catches up feeds whose policy was tightened since.

Usage:
    python scripts/cleanup_feeds.py [--dry-run] [--db-url URL]
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import sessionmaker

from mailfeed.background.retention import RetentionManager
from mailfeed.database.connection import build_engine
from mailfeed.database.repository import FeedRepository

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_repository(db_url=None) -> FeedRepository:
    """Repository on the configured database, or on ``db_url`` when given."""
    if not db_url:
        return FeedRepository()
    engine = build_engine(db_url)
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    return FeedRepository(Session)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply retention policies to all feeds")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be removed without deleting")
    parser.add_argument("--db-url", help="Database URL (default: MAILFEED_DATABASE_URL)")
    args = parser.parse_args(argv)

    repository = build_repository(args.db_url)
    result = RetentionManager(repository).enforce_all(dry_run=args.dry_run)

    print("\n" + "=" * 50)
    print("FEED CLEANUP" + (" (dry run)" if args.dry_run else ""))
    print("=" * 50)
    print(f"Feeds processed: {result.feeds_processed}")
    print(f"Items {'to remove' if args.dry_run else 'removed'}: {result.items_removed}")
    print(f"Errors: {result.errors}")

    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
