#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@warung.local").strip().lower()
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2
    name = os.getenv("BOOTSTRAP_ADMIN_NAME", "Admin").strip() or "Admin"

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE lower(email) = %s", (email,))
                if cur.fetchone():
                    # Idempotent: don't create duplicate users.
                    return 0
                cur.execute(
                    """
                    INSERT INTO users (id, email, name, role, hashed_password, is_active)
                    VALUES (gen_random_uuid(), %s, %s, 'ADMIN', %s, true)
                    """,
                    (email, name, hash_password(password)),
                )

    if generated_password:
        print(f"bootstrap_admin: created {email} with password {password}", file=sys.stderr)
    else:
        print(f"bootstrap_admin: created {email}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
