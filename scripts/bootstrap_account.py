#!/usr/bin/env python3
"""Register an account for testing and initial setup.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=ops@example.com ACCOUNT_PASSWORD=correct-horse python scripts/bootstrap_account.py

    # Or with command line args:
    python scripts/bootstrap_account.py --email ops@example.com --password correct-horse

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_account(
    email: str,
    password: str,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Register an account unless one already exists for the email.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tokenkeeper.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.find_account_by_email(email.strip().lower())
    if existing:
        print(f"Account {existing.email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        email, password, first_name=first_name, last_name=last_name
    )
    print(f"Created account: {result.account.email} (id: {result.account.id})")
    return {
        "account_id": result.account.id,
        "email": result.account.email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Register a tokenkeeper account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default=None, help="Optional first name")
    parser.add_argument("--last-name", default=None, help="Optional last name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("STATE_DIR"):
        os.environ["STATE_DIR"] = "/tmp/tokenkeeper-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from tokenkeeper.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_account(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message} ({e.error_code})")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - account already exists.")


if __name__ == "__main__":
    main()
