#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123! \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password Secret123!

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account details
    SHARED_FS_ROOT: where the store snapshot lives (must match the API server)
    JWT_ACCESS_SECRET, JWT_REFRESH_SECRET, EMAIL_VERIFICATION_SECRET: as for the server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 10 characters drawn from 3+ character classes."""
    if len(password) < 10:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the env defaults below apply before settings load
    from levelup.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)
    if existing and existing.is_admin:
        print(f"User {username} already exists as admin (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "already_admin"}
    if dry_run:
        action = "promote existing user" if existing else "create admin user"
        print(f"[DRY RUN] Would {action} {username}")
        return {"user_id": existing.id if existing else None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_admin(username, email, password)
    status = "promoted" if existing else "created"
    print(f"{status.capitalize()} admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Level Up",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 10 characters with 3+ character classes")
        sys.exit(1)

    # the script never talks to Redis
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("REDIS_URL", "")

    try:
        result = bootstrap_admin(args.username, args.email.strip().lower(), args.password, args.dry_run)
    except (RuntimeError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
