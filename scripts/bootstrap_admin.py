#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure!Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (checked against the password policy)
    SHARED_FS_ROOT: Directory holding the persisted store; without it nothing survives the run
    FIELD_ENCRYPTION_KEY: Required to read or write encrypted profile fields
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified admin, or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatekeeper.service.crypto import validate_password_strength
    from gatekeeper.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing = runtime.store.get_user_by_email(normalized)

    if existing:
        if existing.role == "admin":
            print(f"User {normalized} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": normalized, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {normalized} to admin")
            return {"user_id": existing.id, "email": normalized, "status": "dry_run"}
        runtime.store.update_user(existing.id, role="admin")
        print(f"Promoted existing user {normalized} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "promoted"}

    problems = validate_password_strength(
        password, min_length=runtime.settings.password_min_length
    )
    if problems:
        raise ValueError("; ".join(problems))

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    now = datetime.now(timezone.utc)
    digest = await asyncio.to_thread(runtime.hasher.hash, password)
    user = runtime.store.create_user(
        normalized,
        password_hash=digest,
        role="admin",
        is_email_verified=True,
        password_changed_at=now,
        password_expires_at=now + timedelta(days=runtime.settings.password_expiry_days),
    )
    print(f"Created admin user: {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote a Gatekeeper administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument("--dry-run", action="store_true", help="report the outcome, change nothing")
    args = parser.parse_args()

    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        parser.error(f"missing {', '.join(missing)} (flag or environment variable)")
    if not os.environ.get("SHARED_FS_ROOT"):
        print("Warning: SHARED_FS_ROOT unset; the account disappears when this process exits")
        os.environ.setdefault("TEST_MODE", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ValueError as exc:
        print(f"Refused: {exc}")
        sys.exit(1)

    summary = {
        "created": "admin account created",
        "promoted": "existing account promoted to admin",
        "already_admin": "nothing to do",
        "dry_run": "dry run, nothing written",
    }[result["status"]]
    print(f"{result['email']}: {summary}")


if __name__ == "__main__":
    main()
