#!/usr/bin/env python3
"""Create or promote an admin user in the configured store.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=ops ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username ops --password SecurePassword123!

Only useful with STORE_BACKEND=redis; the memory store forgets the user when
the process exits (set BOOTSTRAP_ADMIN_USERNAME/PASSWORD on the server then).
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    # Import here so config is read after the environment is settled
    from toolgate.config import get_settings
    from toolgate.service.auth import AuthService
    from toolgate.service.runtime import build_store
    from toolgate.service.sessions import SessionRegistry
    from toolgate.service.tokens import TokenAuthority
    from toolgate.storage.models import UserRole

    settings = get_settings()
    store = build_store(settings)
    auth = AuthService(store, SessionRegistry.from_settings(settings, TokenAuthority.from_settings(settings)))

    existing = store.find_user_by_username(username)
    if existing:
        if existing.role == UserRole.ADMIN.value:
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        existing.role = UserRole.ADMIN.value
        store.save(existing)
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}
    user = auth.create_user(username, password, role=UserRole.ADMIN.value)
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the tool gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    try:
        result = bootstrap_admin(args.username, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['username']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
