#!/usr/bin/env python3
"""Run the anonymous-thread retention sweep once.

Usage:
    # Preview what would be purged:
    python scripts/run_cleanup.py --dry-run

    # Purge against the configured database:
    DATABASE_URL=postgresql://... python scripts/run_cleanup.py --retention-days 7

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    RETENTION_DAYS: Age in days after which anonymous threads are purged
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_cleanup(dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    outcome = runtime.sweeper.run(dry_run=dry_run)
    return outcome.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired anonymous conversations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count what would be purged without deleting anything",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override RETENTION_DAYS for this run",
    )

    args = parser.parse_args()

    if args.retention_days is not None:
        os.environ["RETENTION_DAYS"] = str(args.retention_days)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to sweep real data)")

    # The sweep never touches rate-limit state
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    result = run_cleanup(args.dry_run)
    print(json.dumps(result, indent=2))
    if not result["success"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
