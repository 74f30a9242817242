"""
Domain errors raised by the ledger and shift services.

Each carries the HTTP status it maps to; `main.py` renders them as
`{"detail": ..., "details": ...}` so clients can tell the cases apart.
"""

from typing import Iterable, Optional


class PosError(Exception):
    status_code = 500

    def __init__(self, detail: str, details: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.details = details

    def body(self) -> dict:
        out = {"detail": self.detail}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(PosError, ValueError):
    # Also a ValueError so pydantic validators can raise it directly.
    status_code = 400


class NotFoundError(PosError):
    status_code = 404


class StateConflictError(PosError):
    status_code = 409


class AlreadyClosedError(StateConflictError):
    def __init__(self, shift_id):
        super().__init__("Shift is already closed", f"shift {shift_id}")
        self.shift_id = shift_id


def describe_orders(orders: Iterable[dict]) -> str:
    return ", ".join(f"{o.get('order_number') or o.get('id')} ({o.get('status')})" for o in orders)


class UnresolvedOrdersError(StateConflictError):
    def __init__(self, orders: list):
        self.orders = list(orders)
        super().__init__("Cannot close shift with unresolved orders", f"Orders: {describe_orders(self.orders)}")

    def body(self) -> dict:
        out = super().body()
        out["orders"] = [
            {"id": str(o.get("id")), "order_number": o.get("order_number"), "status": o.get("status")}
            for o in self.orders
        ]
        return out
