#!/usr/bin/env python3
"""Run a lifecycle cleanup pass once, outside the scheduler.

Usage:
    # Hourly-style sweep of expired tokens, sessions and blacklist entries:
    python scripts/run_cleanup.py --mode expired

    # Daily-style sweep, optionally overriding the inactivity threshold:
    python scripts/run_cleanup.py --mode comprehensive --days 7

    # Incident response: purge every inactive row regardless of age:
    python scripts/run_cleanup.py --mode emergency

    # Only report what would be removed:
    python scripts/run_cleanup.py --stats

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    REDIS_URL: Optional Redis cache
    JWT_SECRET: Server secret used for token hashes
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(mode: str, days: Optional[int], stats_only: bool) -> dict:
    # Import here so the environment defaults below apply before settings load
    from sessionguard.service.runtime import close_runtime, get_runtime

    runtime = get_runtime()
    try:
        if stats_only:
            return {"mode": "stats", "pending": runtime.cleanup.get_cleanup_stats()}
        if mode == "expired":
            result = await runtime.cleanup.run_cleanup()
        elif mode == "comprehensive":
            result = await runtime.cleanup.run_comprehensive_cleanup(days)
        else:
            result = await runtime.cleanup.emergency_cleanup()
        if result is None:
            raise RuntimeError("cleanup did not complete; see logs for details")
        return {"mode": mode, "removed": result}
    finally:
        await close_runtime()


def main():
    parser = argparse.ArgumentParser(
        description="Run a sessionguard cleanup pass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--mode",
        choices=("expired", "comprehensive", "emergency"),
        default="expired",
        help="Which cleanup to run (default: expired)",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Inactivity threshold for --mode comprehensive (default: INACTIVE_CLEANUP_DAYS)",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print pending cleanup counts without deleting anything",
    )

    args = parser.parse_args()

    if args.days is not None and args.days < 0:
        print("Error: --days must be zero or positive")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(run(args.mode, args.days, args.stats))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
