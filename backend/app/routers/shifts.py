from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..activity import log_activity
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user
from ..errors import NotFoundError
from .. import ledger, shifts
from ..validation import ShiftStatus, parse_uuid

router = APIRouter(prefix="/shift", tags=["shift"])

MANAGER_ROLES = {"ADMIN", "MANAGER"}


class ShiftOpenIn(BaseModel):
    # Parsed into minor units by the service so bad amounts surface as 400s.
    starting_cash: Optional[Decimal] = None
    notes: Optional[str] = None


class ShiftCloseIn(BaseModel):
    ending_cash: Optional[Decimal] = None
    notes: Optional[str] = None


def _can_manage(user: dict, shift: dict) -> bool:
    if str(shift["user_id"]) == str(user["user_id"]):
        return True
    return str(user.get("role") or "").upper() in MANAGER_ROLES


@router.get("")
def list_shifts(
    status: Optional[ShiftStatus] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 100,
    user=Depends(get_current_user),
):
    if user_id:
        user_id = parse_uuid(user_id, "user id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = ledger.list_shifts(
                cur,
                status=status,
                user_id=user_id,
                start_date=start_date,
                end_date=end_date,
                limit=max(1, min(int(limit or 100), 500)),
            )
            return {"shifts": rows}


@router.post("")
def open_shift(data: ShiftOpenIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            shift = shifts.open_shift(cur, user["user_id"], data.starting_cash, data.notes)
        log_activity(conn, user["user_id"], "SHIFT_OPEN", {"shift_id": str(shift["id"]), "starting_cash": shift["starting_cash"]})
        return {"shift": shift}


@router.get("/current")
def current_shift(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            shift = ledger.find_open_shift(cur, user["user_id"])
            if not shift:
                return {"shift": None}
            return shifts.shift_report(cur, shift)


@router.get("/{shift_id}")
def get_shift(shift_id: str, user=Depends(get_current_user)):
    shift_id = parse_uuid(shift_id, "shift id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            shift = ledger.get_shift(cur, shift_id)
            if not shift:
                raise NotFoundError("Shift not found", f"shift {shift_id}")
            if not _can_manage(user, shift):
                raise HTTPException(status_code=403, detail="permission denied")
            return shifts.shift_report(cur, shift)


@router.post("/{shift_id}/close")
def close_shift(shift_id: str, data: ShiftCloseIn, user=Depends(get_current_user)):
    shift_id = parse_uuid(shift_id, "shift id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            shift = ledger.get_shift(cur, shift_id)
            if shift and not _can_manage(user, shift):
                raise HTTPException(status_code=403, detail="permission denied")
            out = shifts.close_shift(
                cur,
                shift_id,
                data.ending_cash,
                notes=data.notes,
                terminal_statuses=settings.shift_close_terminal_statuses,
            )
        closed = out["shift"]
        log_activity(
            conn,
            user["user_id"],
            "SHIFT_CLOSE",
            {
                "shift_id": str(shift_id),
                "ending_cash": closed["ending_cash"],
                "expected_cash": closed["expected_cash"],
                "discrepancy": closed["discrepancy"],
            },
        )
        return out
