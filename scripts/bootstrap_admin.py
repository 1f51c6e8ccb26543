#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password 'Secure-Passw0rd'

    # Create the Postgres tables first:
    DATABASE_URL=postgresql://... python scripts/bootstrap_admin.py --init-schema --username admin ...

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Email for the admin account (optional)
    ADMIN_PASSWORD: Password for the admin account (checked against the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Allow running from a checkout without installing the package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


async def bootstrap_admin(
    username: str,
    password: str,
    *,
    email: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the admin account, or grant the admin role to an existing one.

    Returns:
        dict with account_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment defaults below are in place first
    from idvault.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.store.get_role(ADMIN_ROLE) is None and not dry_run:
        await runtime.accounts.create_role(ADMIN_ROLE, "Full administrative access")

    existing = runtime.store.get_account_by_username(username)
    if existing:
        roles = runtime.store.get_account_roles(existing.id)
        if ADMIN_ROLE in roles:
            return {"account_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "username": username, "status": "dry_run"}
        await runtime.accounts.assign_roles(existing.id, [ADMIN_ROLE])
        return {"account_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "username": username, "status": "dry_run"}

    account = await runtime.accounts.create_account(
        username, password, email=email, roles=[ADMIN_ROLE]
    )
    return {"account_id": account.id, "username": username, "status": "created"}


def init_schema() -> None:
    from idvault.config import get_settings
    from idvault.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(
        settings.database_url,
        mfa_encryption_key=settings.mfa_encryption_key or settings.jwt_secret,
        verify_schema=False,
    )
    try:
        store.apply_schema()
    finally:
        store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an idvault administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Apply the bundled Postgres schema before bootstrapping",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME is required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD is required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/idvault-bootstrap")
        print("Note: using the memory store (set DATABASE_URL for Postgres)")

    from idvault.service.errors import ServiceError

    try:
        if args.init_schema:
            if os.environ.get("USE_MEMORY_STORE") == "true":
                print("Error: --init-schema requires DATABASE_URL")
                sys.exit(1)
            init_schema()
            print("Schema applied.")
        result = asyncio.run(
            bootstrap_admin(
                args.username, args.password, email=args.email, dry_run=args.dry_run
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        for violation in getattr(e, "violations", []):
            print(f"  - {violation.message}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Admin account created: {result['username']} (id: {result['account_id']})")
    elif status == "promoted":
        print(f"Existing account {result['username']} granted the admin role.")
    elif status == "already_admin":
        print("No changes needed; the account is already an admin.")
    else:
        print(f"[DRY RUN] No changes made for {result['username']}.")


if __name__ == "__main__":
    main()
