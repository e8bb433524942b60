#!/usr/bin/env python3
"""Install the built-in RBAC catalog and optionally a platform administrator.

Usage:
    # Seed permissions, roles and grants only:
    DATABASE_URL=postgresql://... python scripts/seed_rbac.py

    # Also create (or promote) a platform admin:
    python scripts/seed_rbac.py --admin-email admin@example.com --admin-password 'SecurePassword123!'

    # Delete expired refresh-token rows:
    python scripts/seed_rbac.py --purge-expired-tokens

Environment Variables:
    ADMIN_EMAIL: Email for the platform admin user
    ADMIN_PASSWORD: Password for the platform admin user
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: generated when unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
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


async def ensure_platform_admin(runtime, email: str, password: str, dry_run: bool) -> dict:
    """Create a platform admin, or add the platform role to an existing user."""
    from tenantauth.service.catalog import PLATFORM_ADMIN
    from tenantauth.service.tokens import merge_roles

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if PLATFORM_ADMIN in existing.platform_roles:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_platform_roles(
            existing.id, merge_roles(existing.platform_roles, [PLATFORM_ADMIN])
        )
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.hasher.hash(password),
        display_name="Platform Administrator",
        platform_roles=[PLATFORM_ADMIN],
    )
    return {"user_id": user.id, "email": email, "status": "created"}


async def run(args: argparse.Namespace) -> int:
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.catalog import PERMISSIONS, PREDEFINED_ROLE_PERMISSIONS, seed_catalog
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()

    if args.dry_run:
        print(
            f"[DRY RUN] Would install {len(PERMISSIONS)} permissions and "
            f"{len(PREDEFINED_ROLE_PERMISSIONS)} roles"
        )
    else:
        created = seed_catalog(runtime.store)
        print(
            "Catalog seeded: "
            f"{created['permissions']} permissions, {created['roles']} roles, "
            f"{created['grants']} grants added"
        )

    if args.admin_email:
        result = await ensure_platform_admin(
            runtime, args.admin_email, args.admin_password, args.dry_run
        )
        if result["status"] == "created":
            print(f"Created platform admin: {result['email']} (id: {result['user_id']})")
        elif result["status"] == "promoted":
            print(f"Promoted {result['email']} to platform admin (id: {result['user_id']})")
        elif result["status"] == "already_admin":
            print(f"{result['email']} is already a platform admin")
        else:
            print(f"[DRY RUN] Would create or promote platform admin {result['email']}")

    if args.purge_expired_tokens and not args.dry_run:
        removed = await runtime.sessions.purge_expired()
        print(f"Deleted {removed} expired refresh tokens")

    await runtime.close()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Seed the tenantauth RBAC catalog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Platform admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Platform admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--purge-expired-tokens",
        action="store_true",
        help="Delete refresh-token rows past their expiry",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.admin_email and not args.admin_password:
        print("Error: --admin-password or ADMIN_PASSWORD required with --admin-email")
        sys.exit(1)
    if args.admin_password and not validate_password(args.admin_password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_ACCESS_SECRET"):
        os.environ["JWT_ACCESS_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("JWT_REFRESH_SECRET"):
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The script seeds explicitly so it can report what changed
    os.environ["SEED_CATALOG_ON_STARTUP"] = "false"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        sys.exit(asyncio.run(run(args)))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
