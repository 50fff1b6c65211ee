#!/usr/bin/env python3
"""Bootstrap a bot owner and print an access token for manual API testing.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePassword123 JWT_SECRET=... python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email owner@example.com --password SecurePassword123 --name Owner

Environment Variables:
    OWNER_EMAIL: Email for the bot owner
    OWNER_PASSWORD: Password for the bot owner (8+ chars, upper, lower and digit)
    JWT_SECRET: Signing secret; must match the server's
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Register the owner, or log in when the account already exists.

    Returns:
        dict with user_id, email, status ('created', 'existing' or 'dry_run')
        and access_token
    """
    # Import here to avoid loading config before env vars are set
    from chatharbor.service.errors import ConflictError
    from chatharbor.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        print(f"[DRY RUN] Would register or log in: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    try:
        issued = runtime.accounts.register(email, password, name)
        status = "created"
    except ConflictError:
        issued = runtime.accounts.login(email, password)
        status = "existing"

    return {
        "user_id": issued.user.id,
        "email": issued.user.email,
        "status": status,
        "access_token": issued.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a ChatHarbor bot owner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Bot Owner", help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set so the token verifies against the server")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner created successfully!")
    elif result["status"] == "existing":
        print("\nOwner already existed; logged in.")
    if result.get("access_token"):
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token']}")


if __name__ == "__main__":
    main()
