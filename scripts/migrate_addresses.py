"""Audit and migrate stored address keys.

Recomputes ``normalized_key`` for every address and rewrites keys that no
longer match their fields. Rows whose recomputed key collides with another
address are reported as duplicates and left for manual merging.

Usage:
    uv run python scripts/migrate_addresses.py --status     # Report drift, change nothing
    uv run python scripts/migrate_addresses.py --migrate    # Rewrite drifted keys
"""

import argparse
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from homiio.addresses import migrate_normalized_keys
from homiio.database import engine, init_db
from homiio.models import Address
from homiio.schemas import KeyMigrationStats


def print_stats(stats: KeyMigrationStats, applied: bool):
    verb = "Updated" if applied else "Would update"
    print(f"Processed: {stats.records_processed:,}")
    print(f"Current: {stats.records_current:,}")
    print(f"Stale: {stats.records_stale:,}")
    print(f"{verb}: {stats.records_updated:,}")
    if stats.duplicates:
        print(f"Duplicates ({len(stats.duplicates)}), merge by hand:")
        for pair in stats.duplicates[:20]:
            print(f"  - {pair}")
        if len(stats.duplicates) > 20:
            print(f"  ... and {len(stats.duplicates) - 20} more")


def main():
    parser = argparse.ArgumentParser(description="Audit and migrate address keys")
    parser.add_argument("--status", action="store_true", help="Report drifted keys without writing")
    parser.add_argument("--migrate", action="store_true", help="Rewrite drifted keys")
    args = parser.parse_args()

    if not (args.status or args.migrate):
        parser.print_help()
        return

    # Create tables if they don't exist
    init_db()

    with Session(engine) as session:
        total = session.scalar(select(func.count(Address.id)))
        print(f"\n=== Addresses: {total:,} ===")

        if args.migrate:
            print("\n=== Migrating normalized keys ===")
            stats = migrate_normalized_keys(session)
        else:
            print("\n=== Key status (dry run) ===")
            stats = migrate_normalized_keys(session, dry_run=True)
        print_stats(stats, applied=args.migrate)

    if stats.duplicates:
        sys.exit(1)


if __name__ == "__main__":
    main()
