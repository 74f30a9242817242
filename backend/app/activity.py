from typing import Optional

from psycopg.types.json import Json

from .jsonlog import json_log

ACTIONS = {"LOGIN", "LOGOUT", "SHIFT_OPEN", "SHIFT_CLOSE"}


def log_activity(conn, user_id, action: str, details: Optional[dict] = None) -> bool:
    """
    Best-effort audit trail. Runs in a savepoint so a failed insert never
    aborts the caller's transaction (a login or a shift close).
    """
    if action not in ACTIONS:
        raise ValueError(f"unknown activity action: {action}")
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO activity_logs (id, user_id, action, details, created_at)
                    VALUES (gen_random_uuid(), %s, %s, %s, now())
                    """,
                    (user_id, action, Json(details or {})),
                )
        return True
    except Exception as ex:
        json_log("warning", "activity.log.failed", user_id=str(user_id), action=action, error=str(ex))
        return False
