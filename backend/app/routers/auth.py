from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from ..activity import log_activity
from ..config import settings
from ..db import get_conn
from ..deps import get_session, SESSION_COOKIE_NAME
from ..security import hash_password, verify_password, needs_rehash, hash_session_token, new_session_token

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


@router.post("/login")
def login(data: LoginIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, name, role, hashed_password, is_active
                FROM users
                WHERE lower(email) = lower(%s)
                """,
                (data.email.strip(),),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="invalid credentials")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    """
                    UPDATE users
                    SET hashed_password = %s
                    WHERE id = %s
                    """,
                    (hash_password(data.password), user["id"]),
                )

            # Use a strong random token and store only a one-way hash in the DB.
            token = new_session_token()
            expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token_hash, expires_at)
                VALUES (gen_random_uuid(), %s, %s, %s)
                """,
                (user["id"], hash_session_token(token), expires),
            )
        log_activity(conn, user["id"], "LOGIN", {"email": user["email"]})

    resp = JSONResponse(
        {
            "token": token,
            "expires_at": expires.isoformat(),
            "user": {"id": str(user["id"]), "email": user["email"], "name": user["name"], "role": user["role"]},
        }
    )
    secure = settings.env not in {"local", "dev"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE id = %s
                """,
                (session["session_id"],),
            )
        log_activity(conn, session["user_id"], "LOGOUT")
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return resp
