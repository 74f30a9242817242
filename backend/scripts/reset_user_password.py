#!/usr/bin/env python3
import argparse
import os
import secrets
import sys
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.jsonlog import json_log
from backend.app.security import hash_password

MIN_PASSWORD_LENGTH = 8


def reset_cashier_password(cur, email: str, password: str) -> Optional[dict]:
    """
    Set a new password for the user and sign out every terminal holding one
    of their sessions. Returns None when no user has that email.

    The open shift (if any) is reported but left alone: the cashier logs in
    again and closes it with the usual cash count.
    """
    cur.execute(
        """
        UPDATE users
        SET hashed_password = %s, is_active = true, updated_at = now()
        WHERE lower(email) = %s
        RETURNING id
        """,
        (hash_password(password), email),
    )
    user = cur.fetchone()
    if not user:
        return None
    cur.execute(
        """
        UPDATE auth_sessions
        SET is_active = false
        WHERE user_id = %s AND is_active = true
        RETURNING token_hash
        """,
        (user["id"],),
    )
    revoked = len(cur.fetchall())
    cur.execute(
        """
        SELECT id
        FROM shifts
        WHERE user_id = %s AND status = 'OPEN'
        """,
        (user["id"],),
    )
    shift = cur.fetchone()
    return {
        "user_id": str(user["id"]),
        "sessions_revoked": revoked,
        "open_shift_id": str(shift["id"]) if shift else None,
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reset a cashier's password and sign out their terminals.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/warung_pos",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", help="New password; a random one is printed when omitted.")
    args = parser.parse_args(argv)

    email = (args.email or "").strip().lower()
    if not email:
        print("email is required", file=sys.stderr)
        return 2
    password = args.password or secrets.token_urlsafe(12)
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"password must be at least {MIN_PASSWORD_LENGTH} characters", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                out = reset_cashier_password(cur, email, password)
    if out is None:
        print(f"user not found: {email}", file=sys.stderr)
        return 2

    json_log("info", "auth.password_reset", **out)
    if out["open_shift_id"]:
        print(f"note: shift {out['open_shift_id']} is still open", file=sys.stderr)
    if not args.password:
        print(f"new password: {password}", file=sys.stderr)
    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
