#!/usr/bin/env python3
"""Delete audit log rows older than the retention window.

Usage:
    # Retention from AUDIT_RETENTION_DAYS (default 90):
    DATABASE_URL=postgresql://... python scripts/purge_audit_logs.py

    # Explicit window or cutoff:
    python scripts/purge_audit_logs.py --days 30
    python scripts/purge_audit_logs.py --before 2024-01-01T00:00:00+00:00

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    AUDIT_RETENTION_DAYS: Default retention when --days/--before are omitted
    AUDIT_CLEANUP_TIMEOUT_SECONDS: Statement timeout for the delete
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_cutoff(raw: str) -> datetime:
    cutoff = datetime.fromisoformat(raw)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)
    return cutoff


def purge(days: int | None, before: datetime | None) -> int:
    # Import here so config is read after argument parsing
    from sessionguard.config import get_settings
    from sessionguard.service.audit import AuditCleanupService
    from sessionguard.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    try:
        cleanup = AuditCleanupService(
            store, timeout_seconds=settings.audit_cleanup_timeout_seconds
        )
        if before is not None:
            return cleanup.purge_before(before)
        return cleanup.purge_older_than(days or settings.audit_retention_days)
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge audit logs past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--days", type=int, help="Delete rows older than this many days")
    group.add_argument(
        "--before", type=_parse_cutoff, help="Delete rows created before this ISO timestamp"
    )
    args = parser.parse_args()

    if args.days is not None and args.days <= 0:
        print("Error: --days must be positive")
        sys.exit(1)

    try:
        deleted = purge(args.days, args.before)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Deleted {deleted} audit log rows")


if __name__ == "__main__":
    main()
