#!/usr/bin/env python3
"""Bootstrap a verified password account for initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py

    # Or with command line args, creating the tables first:
    python scripts/bootstrap_user.py --email ops@example.com --password SecurePassword123! --apply-schema

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SCHEMA_PATH = ROOT / "trustcore" / "storage" / "schema.sql"


def apply_schema(database_url: str) -> None:
    import psycopg

    with psycopg.connect(database_url, autocommit=True) as conn:
        conn.execute(SCHEMA_PATH.read_text())
    print("Applied schema to database")


async def bootstrap_user(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create the account, or mark an existing one verified.

    Returns:
        dict with user_id, email, and status
        ('created', 'verified', 'already_verified' or 'dry_run')
    """
    from trustcore.service.passwords import normalize_email, validate_password_strength
    from trustcore.storage.models import utcnow

    email = normalize_email(email)
    validate_password_strength(password)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.email_verified_at is not None:
            print(f"User {email} already exists and is verified (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_verified"}
        if dry_run:
            print(f"[DRY RUN] Would mark existing user {email} verified")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.mark_email_verified(existing.id, utcnow())
        print(f"Marked existing user {email} verified (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "verified"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = await runtime.passwords.hash(password)
    user = runtime.store.create_user(
        email, password_hash=password_hash, email_verified_at=utcnow()
    )
    print(f"Created user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


async def _run(email: str, password: str, dry_run: bool) -> dict:
    # Import here to avoid loading config before env vars are set
    from trustcore.service.runtime import Runtime

    runtime = Runtime()
    try:
        return await bootstrap_user(runtime, email, password, dry_run)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified account for trustcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create the tables in DATABASE_URL before bootstrapping",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/trustcore-bootstrap"

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    elif args.apply_schema and not args.dry_run:
        apply_schema(database_url)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(_run(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "verified":
        print("\nExisting account marked verified!")
    elif result["status"] == "already_verified":
        print("\nNo changes needed - account is already verified.")


if __name__ == "__main__":
    main()
