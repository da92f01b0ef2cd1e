#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassw0rd python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassw0rd

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
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

ADMIN_ROLE = "admin"


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified admin account or grant ``admin`` to an existing one.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.passwords import normalize_email
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    admin_role = runtime.store.get_role_by_name(ADMIN_ROLE)
    if admin_role is None:
        admin_role = runtime.roles.create_role(ADMIN_ROLE, "Full administrative access")

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        role_names = {role.name for role in runtime.store.roles_for_user(existing_user.id)}
        if ADMIN_ROLE in role_names:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing user {email}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.assign_role(
            existing_user.id, admin_role.id, None, runtime.clock.now()
        )
        print(f"Granted admin to existing user {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    role_ids = [admin_role.id]
    default_role = runtime.store.get_role_by_name(runtime.settings.default_role)
    if default_role is not None:
        role_ids.append(default_role.id)
    created = runtime.users.create_user(email, password, "Administrator", role_ids)

    print(f"Created admin user: {email} (id: {created.user.id})")
    return {"user_id": created.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
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

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from authcore.service.errors import ServiceError
    from authcore.service.passwords import PasswordPolicy

    violation = PasswordPolicy().check(args.password)
    if violation:
        print(f"Error: {violation}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authcore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user granted the admin role!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
