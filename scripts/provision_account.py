#!/usr/bin/env python3
"""Provision an administrator account for initial setup.

Seeds one permission per resource carrying every action, an
``Administrator`` role granting all of them, then creates the staff profile
and credential.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/provision_account.py --staff-id EMP-0001

    # Or with command line args (omit --password to generate one):
    python scripts/provision_account.py --email admin@example.com --staff-id EMP-0001 --display-name "HR Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet the strength policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE_NAME = "Administrator"


def seed_admin_role(store) -> str:
    """Create the all-actions permission set and admin role if missing; return the role id."""
    from hrmsauth.storage.models import Action, Resource, RoleLevel, RolePermission

    existing = store.get_role_by_name(ADMIN_ROLE_NAME)
    if existing:
        return existing.id

    grants = []
    for resource in Resource:
        name = f"{resource.value}:all"
        permission = store.get_permission_by_name(name) or store.create_permission(
            name,
            resource,
            list(Action),
            description=f"Every action on {resource.value}",
        )
        grants.append(RolePermission(permission.id, frozenset(Action)))
    role = store.create_role(
        ADMIN_ROLE_NAME,
        RoleLevel.EXECUTIVE,
        grants,
        description="Full access to every HR resource",
        is_system_role=True,
    )
    return role.id


async def provision_admin(
    runtime,
    email: str,
    password: Optional[str],
    staff_id: str,
    display_name: str,
    dry_run: bool = False,
) -> dict:
    """Create an administrator account.

    Returns:
        dict with profile_id, email, and status ('created', 'exists' or 'dry_run')
    """
    existing = runtime.store.get_credential(email)
    if existing:
        print(f"Account {email} already exists (profile: {existing.profile_id})")
        return {"profile_id": existing.profile_id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would seed the {ADMIN_ROLE_NAME} role and create {email}")
        return {"profile_id": None, "email": email, "status": "dry_run"}

    role_id = seed_admin_role(runtime.store)
    result = await runtime.auth.provision_account(
        email,
        password,
        staff_id,
        display_name,
        role_ids=[role_id],
    )
    if not result.ok:
        raise RuntimeError(f"{result.error.value}: {result.message} {result.detail or ''}".strip())

    account = result.value
    print(f"Created admin account: {email} (profile: {account.profile.id})")
    return {
        "profile_id": account.profile.id,
        "email": account.credential.email,
        "status": "created",
        "generated_password": account.generated_password,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision an administrator account for the HRMS access service",
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
        help="Admin password (or set ADMIN_PASSWORD env var); generated when omitted",
    )
    parser.add_argument("--staff-id", required=True, help="Staff identifier for the profile")
    parser.add_argument("--display-name", default="Administrator", help="Profile display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if args.password:
        from hrmsauth.service.passwords import validate_password_strength

        problems = validate_password_strength(args.password)
        if problems:
            print("Error: password does not meet the strength policy:")
            for problem in problems:
                print(f"       - {problem}")
            sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from hrmsauth.service.runtime import Runtime

    try:
        runtime = Runtime()
        result = asyncio.run(
            provision_admin(
                runtime,
                args.email,
                args.password,
                args.staff_id,
                args.display_name,
                args.dry_run,
            )
        )

        if result["status"] == "created":
            print("\nAdmin account created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Profile ID: {result['profile_id']}")
            if result.get("generated_password"):
                print(f"  Generated password: {result['generated_password']}")
                print("  Store it now; it is not shown again.")
        elif result["status"] == "exists":
            print("\nNo changes needed - the account already exists.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
