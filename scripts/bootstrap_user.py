#!/usr/bin/env python3
"""Create a user with a role and password, or grant the role to an existing user.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=owner@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py --role owner

    # Or with command line args:
    python scripts/bootstrap_user.py --email owner@example.com --password SecurePassword123! --role owner

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed memory store if not set)
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

ROLE_CHOICES = ("owner", "admin", "manager", "cleaner")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_user(
    email: str,
    password: str,
    role: str = "owner",
    *,
    full_name: str = "",
    dry_run: bool = False,
) -> dict:
    """Create or promote a user.

    Returns:
        dict with user_id, email, role and status
        ('created', 'promoted', 'already_assigned' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.runtime import get_runtime
    from sessionguard.storage.models import UserRole

    target_role = UserRole(role)
    runtime = get_runtime()
    normalized = email.strip().lower()

    existing_user = runtime.store.get_user_by_email(normalized)
    if existing_user:
        if target_role in existing_user.roles:
            print(f"User {normalized} already holds {target_role.value} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": normalized,
                "role": target_role.value,
                "status": "already_assigned",
            }

        if dry_run:
            print(f"[DRY RUN] Would grant {target_role.value} to existing user {normalized}")
            return {
                "user_id": existing_user.id,
                "email": normalized,
                "role": target_role.value,
                "status": "dry_run",
            }

        runtime.store.set_user_roles(existing_user.id, [*existing_user.roles, target_role])
        print(f"Granted {target_role.value} to {normalized} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": normalized,
            "role": target_role.value,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {target_role.value} user: {normalized}")
        return {"user_id": None, "email": normalized, "role": target_role.value, "status": "dry_run"}

    user = runtime.store.create_user(
        normalized,
        full_name=full_name,
        roles=[target_role],
        password_hash=runtime.passwords.hash(password),
    )
    print(f"Created {target_role.value} user: {normalized} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": normalized,
        "role": target_role.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SessionGuard user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--role", choices=ROLE_CHOICES, default="owner")
    parser.add_argument("--full-name", default="")
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/sessionguard-bootstrap"

    # File-backed memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_user(
                args.email,
                args.password,
                args.role,
                full_name=args.full_name,
                dry_run=args.dry_run,
            )
        )

        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Role: {result['role']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print(f"\nExisting user granted {result['role']}!")
        elif result["status"] == "already_assigned":
            print("\nNo changes needed.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
