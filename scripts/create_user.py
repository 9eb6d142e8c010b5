#!/usr/bin/env python3
"""Create a user with an already verified email address.

Usage:
    # Using environment variables:
    NEW_USER_EMAIL=ops@example.com NEW_USER_PASSWORD='correct horse battery staple' \
        python scripts/create_user.py --name "Ops Team"

    # Or with command line args:
    python scripts/create_user.py --name "Ops Team" --email ops@example.com \
        --password 'correct horse battery staple'

Environment Variables:
    NEW_USER_EMAIL: Email for the user
    NEW_USER_PASSWORD: Password for the user (must pass the strength check)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified user, or report the existing one.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # imported late so the environment defaults below are in place first
    from pydantic import ValidationError

    from gatehouse.api.schemas import RegisterRequest
    from gatehouse.service.errors import WeakPasswordError
    from gatehouse.service.runtime import get_runtime

    try:
        request = RegisterRequest(name=name, email=email, password=password)
    except ValidationError as exc:
        raise ValueError("; ".join(err["msg"] for err in exc.errors())) from exc

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(request.email)
    if existing:
        print(f"User {request.email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": request.email, "status": "exists"}

    strength = runtime.passwords.score_strength(request.password, (request.name, request.email))
    if not strength.is_valid:
        raise WeakPasswordError(strength.score, strength.feedback)

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {request.email}")
        return {"user_id": None, "email": request.email, "status": "dry_run"}

    user = runtime.store.create_user(
        request.name, request.email, runtime.passwords.hash(request.password)
    )
    runtime.store.mark_email_verified(user.id)
    print(f"Created verified user: {request.email} (id: {user.id})")
    return {"user_id": user.id, "email": request.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a verified Gatehouse user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Display name (letters and spaces)")
    parser.add_argument(
        "--email",
        default=os.environ.get("NEW_USER_EMAIL"),
        help="User email (or set NEW_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="User password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the input without creating the user",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or NEW_USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or NEW_USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_user(args.name, args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
