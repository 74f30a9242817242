from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal

from pydantic import BeforeValidator

from .errors import ValidationError


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def parse_minor_units(value: Any, label: str = "amount") -> int:
    """
    Money is carried as integer minor units (e.g. rupiah, cents).

    Accepts ints, integral floats/Decimals and numeric strings; rejects bools,
    NaN/inf, negatives and fractional amounts.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a valid non-negative number")
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be a valid non-negative number")
    if not d.is_finite() or d < 0:
        raise ValidationError(f"{label} must be a valid non-negative number")
    if d != d.to_integral_value():
        raise ValidationError(f"{label} must be a whole number of minor units")
    return int(d)


def parse_uuid(value: Any, label: str = "id") -> str:
    try:
        return str(uuid.UUID(str(value or "").strip()))
    except ValueError:
        raise ValidationError(f"invalid {label}")


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
OrderStatus = Annotated[
    Literal["PENDING", "PROCESSING", "COMPLETED", "CANCELLED"], BeforeValidator(_to_upper_str)
]
PaymentMethod = Annotated[Literal["CASH", "CARD", "QRIS", "TRANSFER"], BeforeValidator(_to_upper_str)]
ShiftStatus = Annotated[Literal["OPEN", "CLOSED"], BeforeValidator(_to_upper_str)]
MinorUnits = Annotated[int, BeforeValidator(parse_minor_units)]

TERMINAL_ORDER_STATUSES = ("COMPLETED", "CANCELLED")
