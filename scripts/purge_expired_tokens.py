#!/usr/bin/env python3
"""Delete refresh tokens whose expiry has passed.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired_tokens.py

Expired tokens are already rejected on use; this keeps the table small.
Safe to run from cron.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge_expired_tokens() -> int:
    from tokenkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.purge_expired()
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired tokenkeeper refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    from tokenkeeper.service.errors import ServiceError

    try:
        removed = asyncio.run(purge_expired_tokens())
    except ServiceError as e:
        print(f"Error: {e.message} ({e.error_code})")
        sys.exit(1)
    print(f"Purged {removed} expired refresh token(s)")


if __name__ == "__main__":
    main()
