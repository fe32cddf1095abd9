#!/usr/bin/env python3
"""Create an admin account, or promote an existing user to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, password: Optional[str], *, name: str = "Admin", dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the env defaults set in main() are seen by Settings
    from tutorgate.service.credentials import check_password_strength, normalize_email
    from tutorgate.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        # also revokes the user's sessions so the new role applies at next login
        await runtime.auth.set_user_role(existing.id, "admin")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if not password:
        raise ValueError("a password is required to create a new admin")
    check_password_strength(password)
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, name, role="admin", email_verified=True)
    runtime.auth.credentials.set_password(user.id, password)
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tutorgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Admin")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tutorgate-bootstrap")
        print("Note: using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tutorgate.service.errors import ValidationError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, name=args.name, dry_run=args.dry_run)
        )
    except ValidationError as exc:
        print(f"Error: {exc.message}: {exc.detail}")
        return 1
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
