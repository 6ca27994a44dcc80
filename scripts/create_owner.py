#!/usr/bin/env python3
"""Create an OWNER account, or promote an existing account to OWNER.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=Secure123 OWNER_NAME="Jane Owner" \
        python scripts/create_owner.py

    # Or with command line args:
    python scripts/create_owner.py --email owner@example.com --password Secure123 --name "Jane Owner"

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password (8+ characters with upper, lower and a digit)
    OWNER_NAME: Display name
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


def create_owner(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote the owner account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_owner' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from khscrm.service.runtime import get_runtime
    from khscrm.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.OWNER:
            print(f"User {email} is already an owner (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_owner"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to owner")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, Role.OWNER)
        print(f"Promoted existing user {email} to owner (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create owner: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.auth.create_user(email, password, name=name, role=Role.OWNER)
    print(f"Created owner: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create the KHS CRM owner account",
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
    parser.add_argument(
        "--name",
        default=os.environ.get("OWNER_NAME", "Owner"),
        help="Display name (or set OWNER_NAME env var)",
    )
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

    from khscrm.service.auth import password_problems

    problems = password_problems(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_owner(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to owner!")
    elif result["status"] == "already_owner":
        print("\nNo changes needed - user is already an owner.")


if __name__ == "__main__":
    main()
