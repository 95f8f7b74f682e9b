#!/usr/bin/env python3
"""Provision an active operator identity (admin, super_admin, dispatcher, ...).

Operator roles cannot self-register, so the first admin is created here,
already active, without a verification code.

Usage:
    # Using environment variables:
    ADMIN_IDENTIFIER=ops@example.com ADMIN_PASSWORD='Secure-Password-1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --identifier 0911223344 --email ops@example.com \
        --password 'Secure-Password-1' --role super_admin --apply-schema

Environment Variables:
    ADMIN_IDENTIFIER: Phone number or email of the operator
    ADMIN_PASSWORD: Password (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
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
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    identifier: str,
    password: str,
    *,
    role: str = "admin",
    email: str | None = None,
    dry_run: bool = False,
    apply_schema: bool = False,
    store=None,
    hasher=None,
) -> dict:
    """Create an active operator identity unless one already exists.

    Returns:
        dict with identity_id, identifier, role and status
        ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from ridepass.service.normalizer import canonicalize
    from ridepass.storage.models import Identity, IdentityStatus, Role

    role_enum = Role(role)
    if not role_enum.is_privileged:
        raise ValueError(f"{role} is a self-service role; use the registration flow")
    canonical = canonicalize(identifier)

    if hasher is None:
        from ridepass.service.passwords import Argon2PasswordHasher

        hasher = Argon2PasswordHasher()
    if store is None:
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            from ridepass.storage.postgres import PostgresStore

            # Schema check is deferred until the tables may have been created
            store = PostgresStore(database_url, verify_schema=False)
        else:
            from ridepass.storage.memory import MemoryStore

            store = MemoryStore()

    if apply_schema and hasattr(store, "apply_schema"):
        store.apply_schema()

    existing = store.get_identity_by_identifier(canonical)
    if existing:
        print(f"{canonical} already exists as {existing.role.value} (id: {existing.id})")
        return {
            "identity_id": existing.id,
            "identifier": canonical,
            "role": existing.role.value,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role_enum.value}: {canonical}")
        return {
            "identity_id": None,
            "identifier": canonical,
            "role": role_enum.value,
            "status": "dry_run",
        }

    identity = Identity.new(
        canonical,
        hasher.hash(password),
        role_enum,
        email=email.strip().lower() if email else None,
    )
    identity.status = IdentityStatus.ACTIVE
    with store.transaction() as tx:
        tx.insert_identity(identity)
        tx.insert_profile(identity)

    print(f"Created {role_enum.value}: {canonical} (id: {identity.id})")
    return {
        "identity_id": identity.id,
        "identifier": canonical,
        "role": role_enum.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision an operator identity for RidePass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("ADMIN_IDENTIFIER"),
        help="Phone or email (or set ADMIN_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument(
        "--role",
        default="admin",
        choices=["dispatcher", "support", "fleet_manager", "admin", "super_admin"],
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create the auth tables before provisioning",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or ADMIN_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.identifier,
            args.password,
            role=args.role,
            email=args.email,
            dry_run=args.dry_run,
            apply_schema=args.apply_schema,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOperator identity created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Role: {result['role']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - identity already exists.")


if __name__ == "__main__":
    main()
