"""
Authoritative ledger: the server-side system of record for orders and shifts.

Everything here works on a psycopg cursor handed in by the caller so the
caller owns the transaction boundary (`with get_conn() as conn:` commits on
success, rolls back on exception). Row locks taken here are held until that
commit.

Lock order, to keep writers deadlock-free against a shift close:
- close:           shift FOR UPDATE, then plain reads of its orders
- order writers:   order FOR UPDATE (if it exists), then shift FOR SHARE
"""

import secrets
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .errors import NotFoundError, StateConflictError, ValidationError
from .jsonlog import json_log
from .validation import TERMINAL_ORDER_STATUSES

SHIFT_COLUMNS = """
    id, user_id, status, starting_cash, ending_cash, expected_cash, discrepancy,
    notes, opened_at, closed_at, created_at, updated_at
"""

ORDER_COLUMNS = """
    id, local_id, order_number, user_id, shift_id, subtotal, tax, discount, total,
    payment_method, status, notes, created_at, updated_at
"""

# Allowed lifecycle moves; terminal statuses have no way out.
ORDER_TRANSITIONS = {
    "PENDING": {"PROCESSING", "COMPLETED", "CANCELLED"},
    "PROCESSING": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}


def new_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


# -- shifts -------------------------------------------------------------------


def _lock_clause(lock: Optional[str]) -> str:
    if lock is None:
        return ""
    if lock == "update":
        return "FOR UPDATE"
    if lock == "share":
        return "FOR SHARE"
    raise ValueError(f"unknown lock mode: {lock}")


def get_shift(cur, shift_id: str, lock: Optional[str] = None) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {SHIFT_COLUMNS}
        FROM shifts
        WHERE id = %s
        {_lock_clause(lock)}
        """,
        (shift_id,),
    )
    return cur.fetchone()


def lock_shift(cur, shift_id: str) -> Optional[dict]:
    return get_shift(cur, shift_id, lock="update")


def find_open_shift(cur, user_id: str, lock: Optional[str] = None) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {SHIFT_COLUMNS}
        FROM shifts
        WHERE user_id = %s AND status = 'OPEN'
        ORDER BY opened_at DESC
        LIMIT 1
        {_lock_clause(lock)}
        """,
        (user_id,),
    )
    return cur.fetchone()


def insert_shift(cur, user_id: str, starting_cash: int, notes: Optional[str] = None) -> dict:
    cur.execute(
        f"""
        INSERT INTO shifts (id, user_id, status, starting_cash, notes, opened_at)
        VALUES (gen_random_uuid(), %s, 'OPEN', %s, %s, now())
        RETURNING {SHIFT_COLUMNS}
        """,
        (user_id, starting_cash, notes),
    )
    return cur.fetchone()


def update_shift(cur, shift_id: str, closing: dict) -> Optional[dict]:
    """
    Compare-and-swap close: only an OPEN shift is written. Returns None when the
    shift was no longer OPEN.
    """
    cur.execute(
        f"""
        UPDATE shifts
        SET status = 'CLOSED',
            ending_cash = %s,
            expected_cash = %s,
            discrepancy = %s,
            notes = COALESCE(%s, notes),
            closed_at = now(),
            updated_at = now()
        WHERE id = %s AND status = 'OPEN'
        RETURNING {SHIFT_COLUMNS}
        """,
        (
            closing["ending_cash"],
            closing["expected_cash"],
            closing["discrepancy"],
            closing.get("notes"),
            shift_id,
        ),
    )
    return cur.fetchone()


def list_shifts(
    cur,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date=None,
    end_date=None,
    limit: int = 100,
) -> list:
    sql = f"SELECT {SHIFT_COLUMNS} FROM shifts WHERE 1=1"
    params: list[Any] = []
    if status:
        sql += " AND status = %s"
        params.append(status)
    if user_id:
        sql += " AND user_id = %s"
        params.append(user_id)
    if start_date:
        sql += " AND opened_at >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND opened_at < %s"
        params.append(end_date)
    sql += " ORDER BY opened_at DESC LIMIT %s"
    params.append(limit)
    cur.execute(sql, params)
    return cur.fetchall()


def find_orders_for_shift(cur, shift_id: str) -> list:
    cur.execute(
        """
        SELECT id, order_number, status, total, payment_method
        FROM orders
        WHERE shift_id = %s
        ORDER BY created_at, id
        """,
        (shift_id,),
    )
    return cur.fetchall()


def find_unresolved_orders(cur, shift_id: str, terminal_statuses: Iterable[str] = ("COMPLETED",)) -> list:
    cur.execute(
        """
        SELECT id, order_number, status
        FROM orders
        WHERE shift_id = %s
          AND NOT (status = ANY(%s))
        ORDER BY created_at, id
        """,
        (shift_id, list(terminal_statuses)),
    )
    return cur.fetchall()


# -- orders -------------------------------------------------------------------


def _require_open_shift_for_write(cur, shift_id) -> None:
    shift = get_shift(cur, shift_id, lock="share")
    if not shift:
        raise NotFoundError("Shift not found", f"shift {shift_id}")
    if shift["status"] != "OPEN":
        raise StateConflictError("Shift is closed", f"shift {shift_id} no longer accepts order changes")


def _resolve_order_shift(cur, shift_id: Optional[str], user_id: str) -> Optional[str]:
    if shift_id:
        _require_open_shift_for_write(cur, shift_id)
        return str(shift_id)
    shift = find_open_shift(cur, user_id, lock="share")
    return str(shift["id"]) if shift else None


def _replace_items(cur, order_id, items: list) -> None:
    cur.execute("DELETE FROM order_items WHERE order_id = %s", (order_id,))
    for it in items:
        cur.execute(
            """
            INSERT INTO order_items (id, order_id, menu_id, quantity, price, notes)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
            """,
            (order_id, it["menu_id"], it["quantity"], it["price"], it.get("notes")),
        )


def _check_totals(payload: dict) -> None:
    if payload["total"] != payload["subtotal"] + payload["tax"] - payload["discount"]:
        raise ValidationError(
            "order total does not match subtotal + tax - discount",
            f"subtotal={payload['subtotal']} tax={payload['tax']} discount={payload['discount']} total={payload['total']}",
        )


def apply_order_mutation(cur, local_id: str, payload: dict, user_id: str) -> dict:
    """
    Create or update the order identified by the terminal's local_id.

    Idempotent on local_id: replaying a mutation the ledger already applied
    returns the existing server id instead of inserting a second order.
    """
    local_id = str(local_id or "").strip()
    if not local_id:
        raise ValidationError("local_id is required")
    _check_totals(payload)

    cur.execute(
        """
        SELECT id, status, shift_id, user_id
        FROM orders
        WHERE local_id = %s
        FOR UPDATE
        """,
        (local_id,),
    )
    existing = cur.fetchone()
    if existing:
        return _update_existing_order(cur, existing, payload, user_id)

    shift_id = _resolve_order_shift(cur, payload.get("shift_id"), user_id)
    cur.execute(
        """
        INSERT INTO orders
          (id, local_id, order_number, user_id, shift_id, subtotal, tax, discount, total,
           payment_method, status, notes, created_at, updated_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), now())
        ON CONFLICT (local_id) DO NOTHING
        RETURNING id, status
        """,
        (
            local_id,
            payload.get("order_number") or new_order_number(),
            user_id,
            shift_id,
            payload["subtotal"],
            payload["tax"],
            payload["discount"],
            payload["total"],
            payload["payment_method"],
            payload.get("status") or "PENDING",
            payload.get("notes"),
            payload.get("created_at"),
        ),
    )
    row = cur.fetchone()
    if not row:
        # A concurrent replay of the same mutation won the insert.
        cur.execute("SELECT id, status FROM orders WHERE local_id = %s", (local_id,))
        row = cur.fetchone()
        return {"server_id": str(row["id"]), "status": row["status"], "created": False}
    _replace_items(cur, row["id"], payload.get("items") or [])
    return {"server_id": str(row["id"]), "status": row["status"], "created": True}


def _update_existing_order(cur, existing: dict, payload: dict, user_id: str) -> dict:
    if str(existing.get("user_id")) != str(user_id):
        raise StateConflictError("Order belongs to another cashier", f"order {existing['id']} was recorded by a different user")
    current = existing["status"]
    wanted = payload.get("status") or current
    if current in TERMINAL_ORDER_STATUSES:
        if wanted == current:
            # Replay of an already-applied final state.
            return {"server_id": str(existing["id"]), "status": current, "created": False}
        raise StateConflictError("Order is already final on the server", f"order is {current}, terminal sent {wanted}")
    if wanted != current and wanted not in ORDER_TRANSITIONS.get(current, set()):
        # Stale replay: the ledger has already moved past what the terminal sent.
        json_log("info", "ledger.order.stale_replay", order_id=str(existing["id"]), status=current, sent=wanted)
        return {"server_id": str(existing["id"]), "status": current, "created": False}
    if existing.get("shift_id"):
        _require_open_shift_for_write(cur, existing["shift_id"])
    cur.execute(
        """
        UPDATE orders
        SET subtotal = %s, tax = %s, discount = %s, total = %s,
            payment_method = %s, status = %s, notes = %s, updated_at = now()
        WHERE id = %s
        RETURNING id, status
        """,
        (
            payload["subtotal"],
            payload["tax"],
            payload["discount"],
            payload["total"],
            payload["payment_method"],
            wanted,
            payload.get("notes"),
            existing["id"],
        ),
    )
    row = cur.fetchone()
    _replace_items(cur, existing["id"], payload.get("items") or [])
    return {"server_id": str(row["id"]), "status": row["status"], "created": False}


def update_order_status(cur, order_id: str, status: str) -> dict:
    cur.execute(
        """
        SELECT id, order_number, status, shift_id
        FROM orders
        WHERE id = %s
        FOR UPDATE
        """,
        (order_id,),
    )
    order = cur.fetchone()
    if not order:
        raise NotFoundError("Order not found", f"order {order_id}")
    if order["status"] == status:
        return get_order(cur, order_id)
    if status not in ORDER_TRANSITIONS.get(order["status"], set()):
        raise StateConflictError(
            "Invalid order status transition",
            f"{order['order_number']}: {order['status']} -> {status}",
        )
    if order.get("shift_id"):
        _require_open_shift_for_write(cur, order["shift_id"])
    cur.execute(
        f"""
        UPDATE orders
        SET status = %s, updated_at = now()
        WHERE id = %s
        RETURNING {ORDER_COLUMNS}
        """,
        (status, order_id),
    )
    return cur.fetchone()


def get_order(cur, order_id: str) -> Optional[dict]:
    cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,))
    return cur.fetchone()


def list_orders(cur, shift_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> list:
    sql = f"SELECT {ORDER_COLUMNS} FROM orders WHERE 1=1"
    params: list[Any] = []
    if shift_id:
        sql += " AND shift_id = %s"
        params.append(shift_id)
    if status:
        sql += " AND status = %s"
        params.append(status)
    sql += " ORDER BY created_at DESC, id LIMIT %s"
    params.append(limit)
    cur.execute(sql, params)
    return cur.fetchall()


# -- catalog ------------------------------------------------------------------


def list_categories(cur) -> list:
    cur.execute(
        """
        SELECT id, name, icon, color, sort_order AS "order", version, created_at, updated_at
        FROM categories
        ORDER BY sort_order, name
        """
    )
    return cur.fetchall()


def list_menus(cur, category_id: Optional[str] = None, available: Optional[bool] = None) -> list:
    sql = """
        SELECT id, name, description, price, image, category_id, is_available, version,
               created_at, updated_at
        FROM menus
        WHERE 1=1
    """
    params: list[Any] = []
    if category_id:
        sql += " AND category_id = %s"
        params.append(category_id)
    if available is not None:
        sql += " AND is_available = %s"
        params.append(available)
    sql += " ORDER BY name"
    cur.execute(sql, params)
    return cur.fetchall()
