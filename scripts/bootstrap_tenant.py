#!/usr/bin/env python3
"""Seed the default tenant and, optionally, a SUPER_ADMIN account.

Signups without an explicit tenant land on the tenant whose subdomain is
``default``; run this once per database before opening signups.

Usage:
    python scripts/bootstrap_tenant.py
    python scripts/bootstrap_tenant.py --subdomain default --name "FitOS"
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD='Str0ng!Pass' \
        python scripts/bootstrap_tenant.py

Environment Variables:
    ADMIN_EMAIL: Email for the SUPER_ADMIN user (optional)
    ADMIN_PASSWORD: Password for that user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap(
    subdomain: str,
    name: str | None,
    admin_email: str | None,
    admin_password: str | None,
    dry_run: bool = False,
) -> dict:
    """Create the tenant and admin if missing; returns what was done."""
    # imported late so the env defaults from main() are in place
    from fitos_auth.config import get_settings
    from fitos_auth.service.runtime import Runtime
    from fitos_auth.storage.models import UserRole, UserStatus

    runtime = Runtime(get_settings())
    store = runtime.store
    result: dict = {"tenant_status": "exists", "admin_status": "skipped"}

    tenant = store.get_tenant_by_subdomain(subdomain)
    if tenant is None:
        if dry_run:
            print(f"[DRY RUN] Would create tenant '{subdomain}'")
            result["tenant_status"] = "dry_run"
            return result
        tenant = store.create_tenant(subdomain, name)
        result["tenant_status"] = "created"
        print(f"Created tenant '{subdomain}' (id: {tenant.id})")
    else:
        print(f"Tenant '{subdomain}' already exists (id: {tenant.id})")
    result["tenant_id"] = tenant.id

    if not admin_email:
        return result

    existing = store.get_user_by_email(admin_email)
    if existing:
        if existing.role == UserRole.SUPER_ADMIN:
            result["admin_status"] = "already_admin"
        elif dry_run:
            result["admin_status"] = "dry_run"
        else:
            store.update_user_role(existing.id, UserRole.SUPER_ADMIN)
            result["admin_status"] = "promoted"
        result["user_id"] = existing.id
        return result

    if dry_run:
        result["admin_status"] = "dry_run"
        return result

    report = runtime.passwords.validate_password(admin_password or "")
    if not report.is_valid:
        raise ValueError("; ".join(report.reasons))
    password_hash, algo = runtime.passwords.hash_password(admin_password)
    user = store.create_user_with_password(
        admin_email,
        password_hash,
        algo,
        tenant_id=tenant.id,
        role=UserRole.SUPER_ADMIN,
        status=UserStatus.ACTIVE,
        name="Administrator",
        email_verified=True,
    )
    result["admin_status"] = "created"
    result["user_id"] = user.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed the default FitOS tenant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--subdomain",
        default=os.environ.get("DEFAULT_TENANT_SUBDOMAIN", "default"),
        help="Tenant subdomain (default: DEFAULT_TENANT_SUBDOMAIN or 'default')",
    )
    parser.add_argument("--name", default=None, help="Tenant display name")
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="SUPER_ADMIN email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="SUPER_ADMIN password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.admin_email and not args.admin_password:
        print("Error: --admin-password or ADMIN_PASSWORD required with an admin email")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/fitos-bootstrap")
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap(
            args.subdomain,
            args.name,
            args.admin_email,
            args.admin_password,
            args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\nTenant: {result['tenant_status']}")
    if args.admin_email:
        print(f"Admin ({args.admin_email}): {result['admin_status']}")


if __name__ == "__main__":
    main()
