"""
Operator-only script (NOT an API endpoint):
Create an admin account. Sessions linked to it through /api/admin/login are
unmetered.

Usage:
  python scripts/create_admin.py --username ops --password '...'
  ADMIN_PASSWORD=... python scripts/create_admin.py --username ops
"""

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from auth import hash_password  # noqa: E402
from config import STORAGE_BACKEND  # noqa: E402
from models import User  # noqa: E402
from storage import StorageError, create_storage  # noqa: E402


async def create_admin(username: str, password: str, backend: str = STORAGE_BACKEND) -> User:
    if backend == "postgres":
        from db_postgres import init_postgres_db
        init_postgres_db()

    storage = create_storage(backend)
    if await storage.get_user_by_username(username) is not None:
        raise StorageError(f"User {username!r} already exists")
    return await storage.create_user(
        User(username=username, password_hash=hash_password(password), is_admin=True)
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create an admin user.")
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    parser.add_argument("--backend", default=STORAGE_BACKEND, choices=["postgres", "memory"])
    args = parser.parse_args(argv)

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("Error: password must be at least 8 characters", file=sys.stderr)
        return 2

    try:
        user = asyncio.run(create_admin(args.username, password, args.backend))
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Created admin user {user.username} ({user.id})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
