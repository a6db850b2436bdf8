#!/usr/bin/env python3
"""Create login users and clear lockouts.

Usage:
    # New company, account and registered user with a second factor:
    python scripts/create_user.py create --email owner@example.com \
        --password 'CorrectHorse42!' --registered --enroll-second-factor

    # Disposable trial user sharing an existing account's company:
    python scripts/create_user.py create --email trial@example.com \
        --password 'CorrectHorse42!' --company-id <company id>

    # Reset the failed-login counter of a locked user:
    python scripts/create_user.py unlock --email owner@example.com

Environment Variables:
    USER_EMAIL / USER_PASSWORD: defaults for --email / --password
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def create_user(
    runtime,
    email: str,
    password: str,
    *,
    registered: bool = False,
    company_id: Optional[str] = None,
    enroll_second_factor: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create a user (and its account, plus a company unless one is given)."""
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}
    if company_id and runtime.store.get_company(company_id) is None:
        raise ValueError(f"company {company_id} not found")
    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    if not company_id:
        company_id = runtime.store.create_company(name=email.split("@")[-1]).id
    account = runtime.store.create_account(company_id)
    user = runtime.store.create_user(account.id, email, registered=registered)
    runtime.credentials.set_password(user.id, password)
    result = {
        "user_id": user.id,
        "email": email,
        "account_key": account.account_key,
        "company_id": company_id,
        "status": "created",
    }
    if enroll_second_factor:
        _, uri = runtime.challenges.enroll(user.id, email)
        result["otpauth_uri"] = uri
    print(f"Created user: {email} (id: {user.id})")
    return result


def unlock_user(runtime, email: str) -> dict:
    if not runtime.lockout.unlock(email):
        print(f"No user with email {email}")
        return {"email": email, "status": "not_found"}
    print(f"Cleared failed logins for {email}")
    return {"email": email, "status": "unlocked"}


def main():
    parser = argparse.ArgumentParser(
        description="Manage Gatehouse login users",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a user")
    create.add_argument("--email", default=os.environ.get("USER_EMAIL"))
    create.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    create.add_argument("--registered", action="store_true", help="Mark as a registered (non-trial) user")
    create.add_argument("--company-id", help="Attach the new account to an existing company")
    create.add_argument("--enroll-second-factor", action="store_true")
    create.add_argument("--dry-run", action="store_true")

    unlock = sub.add_parser("unlock", help="Reset a user's failed-login counter")
    unlock.add_argument("--email", default=os.environ.get("USER_EMAIL"))

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if args.command == "create":
        if not args.password:
            print("Error: --password or USER_PASSWORD environment variable required")
            sys.exit(1)
        if not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/gatehouse-cli")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "create":
            result = create_user(
                runtime,
                args.email,
                args.password,
                registered=args.registered,
                company_id=args.company_id,
                enroll_second_factor=args.enroll_second_factor,
                dry_run=args.dry_run,
            )
            if result.get("account_key"):
                print(f"  Account key: {result['account_key']}")
            if result.get("otpauth_uri"):
                print(f"  Authenticator URI: {result['otpauth_uri']}")
        else:
            result = unlock_user(runtime, args.email)
            if result["status"] == "not_found":
                sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
