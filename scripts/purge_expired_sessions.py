#!/usr/bin/env python3
"""Delete expired refresh sessions once, outside the API process.

Usage:
    # Count what a sweep would remove:
    python scripts/purge_expired_sessions.py --dry-run

    # Remove expired rows:
    DATABASE_URL=postgresql://... python scripts/purge_expired_sessions.py

Environment Variables:
    JWT_SECRET: Required by the settings loader
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: State directory for the memory store
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_expired_sessions(dry_run: bool = False) -> dict:
    """Run one sweep over the configured store.

    Returns:
        dict with the number of expired sessions and whether they were removed
    """
    # Import here to avoid loading config before env vars are set
    from sessionauth.service.runtime import get_runtime
    from sessionauth.storage.models import utcnow

    runtime = get_runtime()
    if dry_run:
        count = runtime.store.count_expired(utcnow())
        print(f"[DRY RUN] {count} expired session(s) would be removed")
        return {"count": count, "status": "dry_run"}

    count = runtime.auth.purge_expired_sessions()
    print(f"Removed {count} expired session(s)")
    return {"count": count, "status": "purged"}


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired refresh sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count expired sessions without deleting them",
    )
    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to sweep PostgreSQL)")

    try:
        purge_expired_sessions(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
