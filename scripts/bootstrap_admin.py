#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='...' \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password '...'

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: Postgres connection string (required unless USE_MEMORY_STORE=true)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def bootstrap_admin(email: str, username: str, password: str, *, dry_run: bool = False) -> dict:
    """Create or promote ``email`` to the admin role.

    Returns:
        dict with account_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Deferred so the env set up by main() is seen by get_settings()
    from blogauth.service.runtime import get_runtime
    from blogauth.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role_id == ROLE_ADMIN:
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(existing.id, role_id=ROLE_ADMIN)
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        username, email, runtime.credentials.hash(password), role_id=ROLE_ADMIN
    )
    return {"account_id": account.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true", help="Report what would change")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: password must be at least 12 characters with 3+ character classes")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL") and os.environ.get("USE_MEMORY_STORE", "").lower() != "true":
        print("Error: set DATABASE_URL; an in-memory admin would vanish on exit")
        sys.exit(1)

    try:
        result = bootstrap_admin(args.email, args.username, args.password, dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed; account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
