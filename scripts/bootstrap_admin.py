#!/usr/bin/env python3
"""Create a HoopCards ADMIN account, or promote an existing collector to ADMIN.

    python scripts/bootstrap_admin.py --email ops@hoopcards.example --password 'Rebound!Pass42'

The email and password may also come from ADMIN_EMAIL and ADMIN_PASSWORD.
Without DATABASE_URL the in-memory store is used, which is only useful with
--dry-run or for smoke testing.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "ADMIN"


def password_problem(password: str):
    """Return why ``password`` fails the API's strong-password rule, or None."""
    from hoopcards.api.schemas import _validate_strong_password

    try:
        _validate_strong_password(password, "Password")
    except ValueError as exc:
        return str(exc)
    return None


def prepare_environment() -> None:
    """Fill in what the runtime needs to start from a one-off shell."""
    # No tokens are minted here, so throwaway signing secrets are fine
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("JWT_REFRESH_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is not set; using the in-memory store")


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` belongs to an ADMIN.

    The returned ``status`` is one of ``created``, ``promoted``,
    ``already_admin`` or ``dry_run``.
    """
    from hoopcards.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        user = runtime.auth.find_user_by_email(email)
        if user and user.role == ADMIN_ROLE:
            return {"user_id": user.id, "email": user.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}
        status = "promoted"
        if user is None:
            user = await runtime.auth.register(email, password, "Administrator")
            status = "created"
        runtime.auth.set_user_role(user.id, ADMIN_ROLE)
        return {"user_id": user.id, "email": user.email, "status": status}
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run", action="store_true", help="report what would change and exit"
    )
    return parser


_STATUS_MESSAGES = {
    "created": "Created admin {email} (id: {user_id})",
    "promoted": "Promoted {email} to admin (id: {user_id})",
    "already_admin": "{email} is already an admin; nothing to do",
    "dry_run": "[dry run] {email} would be made an admin",
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("an email and password are required (flags or ADMIN_EMAIL/ADMIN_PASSWORD)")
    problem = password_problem(args.password)
    if problem:
        parser.error(problem)

    prepare_environment()
    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"bootstrap failed: {exc}", file=sys.stderr)
        return 1
    print(_STATUS_MESSAGES[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
