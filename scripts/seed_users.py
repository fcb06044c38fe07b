#!/usr/bin/env python3
"""Seed one pre-confirmed user per role.

Usage:
    SEED_ADMIN_PASSWORD=... SEED_EDITOR_PASSWORD=... python scripts/seed_users.py

    # Local development with throwaway passwords and the in-memory store:
    python scripts/seed_users.py --dev --dry-run

Environment Variables:
    SEED_<ROLE>_PASSWORD: Password for the seeded user of that role
    SEED_EMAIL_DOMAIN: Domain for seeded addresses (default: example.com)
    REDIS_URL: Redis connection string for the target store
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Dict, List

# Development-only passwords, never used unless --dev is passed
DEV_PASSWORDS = {
    "admin": "test_admin1",
    "editor": "test_editor1",
    "contributor": "test_contrib1",
    "viewer": "test_viewer1",
}

SEED_USERS = [
    {"id": "admin", "name": "Admin User", "role": "admin", "bio": "Site administrator with full access."},
    {"id": "editor", "name": "Editor User", "role": "editor", "bio": "Content editor with write access."},
    {"id": "contributor", "name": "Contributor User", "role": "contributor", "bio": "Contributor with limited access."},
    {"id": "viewer", "name": "Viewer User", "role": "viewer", "bio": "Read-only viewer."},
]


def resolve_password(role: str, *, dev: bool) -> str | None:
    env_var = f"SEED_{role.upper()}_PASSWORD"
    password = os.environ.get(env_var)
    if password:
        return password
    if dev:
        return DEV_PASSWORDS[role]
    return None


async def seed_users(*, domain: str, dev: bool, dry_run: bool = False) -> List[Dict[str, str]]:
    """Create the seed users, skipping any that already exist."""
    # Import here so env overrides from main() are applied before settings load
    from wikiauth.service.errors import ConflictError
    from wikiauth.service.permissions import Role
    from wikiauth.service.runtime import get_runtime
    from wikiauth.service.validation import is_valid_password

    runtime = get_runtime()
    results: List[Dict[str, str]] = []
    for seed in SEED_USERS:
        email = f"{seed['id']}@{domain}"
        password = resolve_password(seed["role"], dev=dev)
        if password is None:
            print(f"Skipping {seed['id']}: SEED_{seed['role'].upper()}_PASSWORD not set")
            results.append({"user_id": seed["id"], "status": "skipped"})
            continue
        if not is_valid_password(password):
            print(f"Skipping {seed['id']}: password must be 8+ characters with letters and numbers")
            results.append({"user_id": seed["id"], "status": "weak_password"})
            continue
        if dry_run:
            print(f"[DRY RUN] Would create {seed['role']} user {seed['id']} <{email}>")
            results.append({"user_id": seed["id"], "status": "dry_run"})
            continue
        try:
            user, _ = await runtime.credentials.create_user(
                seed["id"],
                seed["name"],
                email,
                password,
                role=Role.parse(seed["role"]),
                confirmed=True,
            )
        except ConflictError as exc:
            print(f"User {seed['id']} already exists ({exc.detail.get('field')})")
            results.append({"user_id": seed["id"], "status": "exists"})
            continue
        await runtime.credentials.update_profile(user.id, bio=seed["bio"], avatar="/favicon.svg")
        print(f"Created {user.role} user {user.id} <{user.email}>")
        results.append({"user_id": user.id, "status": "created"})
    await runtime.close()
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed wiki users for each role",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--domain",
        default=os.environ.get("SEED_EMAIL_DOMAIN", "example.com"),
        help="Email domain for seeded users (or set SEED_EMAIL_DOMAIN)",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Fall back to development passwords and the in-memory store",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.dev:
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: --dev uses development passwords and the in-memory store")

    try:
        results = asyncio.run(seed_users(domain=args.domain, dev=args.dev, dry_run=args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    created = sum(1 for r in results if r["status"] == "created")
    print(f"\nDone: {created} created, {len(results) - created} unchanged")


if __name__ == "__main__":
    main()
