"""
Shift reconciliation: the OPEN -> CLOSED state machine and its cash math.

`close_shift` must run inside a single DB transaction (the caller's
`get_conn()` block). The shift row is locked FOR UPDATE before anything is
read, so the unresolved-order check, the sales sum and the final write all see
the same set of orders; order writers take FOR SHARE on the shift row and wait
for us.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from . import ledger
from .errors import AlreadyClosedError, NotFoundError, StateConflictError, UnresolvedOrdersError
from .jsonlog import json_log
from .validation import parse_minor_units

DEFAULT_TERMINAL_STATUSES = ("COMPLETED",)


@dataclass
class ShiftSales:
    total_sales: int = 0
    order_count: int = 0
    cash_sales: int = 0
    non_cash_sales: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def summarize_shift_sales(orders: Iterable[dict]) -> ShiftSales:
    """Completed orders only; cancelled and in-flight orders carry no money."""
    out = ShiftSales()
    for o in orders:
        if o.get("status") != "COMPLETED":
            continue
        total = int(o.get("total") or 0)
        out.order_count += 1
        out.total_sales += total
        if o.get("payment_method") == "CASH":
            out.cash_sales += total
        else:
            out.non_cash_sales += total
    return out


def calculate_expected_cash(starting_cash: int, cash_sales: int) -> int:
    return int(starting_cash) + int(cash_sales)


def calculate_discrepancy(actual_cash: int, expected_cash: int) -> int:
    # Positive: drawer over. Negative: drawer short.
    return int(actual_cash) - int(expected_cash)


def shift_duration(opened_at: datetime, closed_at: Optional[datetime] = None, now: Optional[datetime] = None) -> dict:
    end = closed_at or now or datetime.now(timezone.utc)
    total_minutes = max(0, int((end - opened_at).total_seconds() // 60))
    return {"hours": total_minutes // 60, "minutes": total_minutes % 60, "total_minutes": total_minutes}


def open_shift(cur, user_id: str, starting_cash: Any, notes: Optional[str] = None) -> dict:
    starting = parse_minor_units(starting_cash, "starting cash")
    existing = ledger.find_open_shift(cur, user_id)
    if existing:
        raise StateConflictError("You already have an open shift", f"shift {existing['id']}")
    shift = ledger.insert_shift(cur, user_id, starting, notes)
    json_log("info", "shift.opened", shift_id=str(shift["id"]), user_id=str(user_id), starting_cash=starting)
    return shift


def close_shift(
    cur,
    shift_id: str,
    ending_cash: Any,
    notes: Optional[str] = None,
    terminal_statuses: Iterable[str] = DEFAULT_TERMINAL_STATUSES,
) -> dict:
    # Validation happens before any I/O.
    ending = parse_minor_units(ending_cash, "ending cash")

    shift = ledger.lock_shift(cur, shift_id)
    if not shift:
        raise NotFoundError("Shift not found", f"shift {shift_id}")
    if shift["status"] == "CLOSED":
        raise AlreadyClosedError(shift_id)

    unresolved = ledger.find_unresolved_orders(cur, shift_id, tuple(terminal_statuses))
    if unresolved:
        err = UnresolvedOrdersError(unresolved)
        json_log("warning", "shift.close.blocked", shift_id=str(shift_id), unresolved=len(unresolved), details=err.details)
        raise err

    sales = summarize_shift_sales(ledger.find_orders_for_shift(cur, shift_id))
    expected = calculate_expected_cash(shift["starting_cash"], sales.cash_sales)
    discrepancy = calculate_discrepancy(ending, expected)

    closed = ledger.update_shift(
        cur,
        shift_id,
        {"ending_cash": ending, "expected_cash": expected, "discrepancy": discrepancy, "notes": notes},
    )
    if not closed:
        # Only reachable if the row lock above was bypassed.
        raise AlreadyClosedError(shift_id)
    json_log(
        "info",
        "shift.closed",
        shift_id=str(shift_id),
        expected_cash=expected,
        ending_cash=ending,
        discrepancy=discrepancy,
        cash_sales=sales.cash_sales,
        order_count=sales.order_count,
    )
    return {"shift": closed, "sales": sales.as_dict()}


def shift_report(cur, shift: dict, now: Optional[datetime] = None) -> dict:
    """Shift row plus sales summary, duration and (for open shifts) live expected cash."""
    sales = summarize_shift_sales(ledger.find_orders_for_shift(cur, shift["id"]))
    out = {
        "shift": shift,
        "sales": sales.as_dict(),
        "duration": shift_duration(shift["opened_at"], shift.get("closed_at"), now=now),
    }
    if shift["status"] == "OPEN":
        out["expected_cash"] = calculate_expected_cash(shift["starting_cash"], sales.cash_sales)
    return out
