from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def to_minor_units(v) -> int:
    """Coerce a money amount to integer minor units.

    Accepts ints, integral Decimals/floats and integer strings. Rejects bools,
    NaN/inf and anything with a fractional part instead of rounding it.
    """
    if isinstance(v, bool):
        raise ValueError("amount must be a number")
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        if not math.isfinite(v) or not v.is_integer():
            raise ValueError("amount must be a finite whole number of minor units")
        return int(v)
    if isinstance(v, Decimal):
        if not v.is_finite() or v != v.to_integral_value():
            raise ValueError("amount must be a finite whole number of minor units")
        return int(v)
    if isinstance(v, str) and v.strip().lstrip("-").isdigit():
        return int(v.strip())
    raise ValueError("amount must be a number")


MinorUnits = Annotated[int, BeforeValidator(to_minor_units), Field(ge=0)]

OrderStatus = Annotated[Literal["PENDING", "PROCESSING", "COMPLETED", "CANCELLED"], BeforeValidator(_to_upper_str)]
PaymentMethod = Annotated[Literal["CASH", "CARD", "QRIS", "TRANSFER"], BeforeValidator(_to_upper_str)]
SyncStatus = Annotated[Literal["pending", "synced", "conflict", "failed"], BeforeValidator(_to_lower_str)]
QueueStatus = Annotated[Literal["pending", "synced", "failed"], BeforeValidator(_to_lower_str)]
SyncOperation = Annotated[Literal["CREATE", "UPDATE"], BeforeValidator(_to_upper_str)]


class OfflineOrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    menu_id: str
    quantity: int = Field(gt=0)
    price: MinorUnits
    notes: Optional[str] = None


class OfflineOrder(BaseModel):
    id: str = Field(default_factory=new_id)
    local_id: str = Field(default_factory=new_id)
    server_id: Optional[str] = None
    order_number: str
    user_id: str
    shift_id: Optional[str] = None
    subtotal: MinorUnits
    tax: MinorUnits = 0
    discount: MinorUnits = 0
    total: MinorUnits
    payment_method: PaymentMethod = "CASH"
    status: OrderStatus = "PENDING"
    notes: Optional[str] = None
    items: List[OfflineOrderItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    sync_status: SyncStatus = "pending"
    synced_at: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    last_sync_attempt: Optional[datetime] = None
    conflict_reason: Optional[str] = None

    @model_validator(mode="after")
    def _synced_at_matches_status(self):
        if (self.sync_status == "synced") != (self.synced_at is not None):
            raise ValueError("synced_at must be set exactly when sync_status is 'synced'")
        return self

    def sync_payload(self) -> dict:
        """Order fields the ledger needs; sync bookkeeping stays local."""
        return self.model_dump(
            mode="json",
            include={
                "order_number", "user_id", "shift_id", "subtotal", "tax", "discount",
                "total", "payment_method", "status", "notes", "created_at",
            },
        ) | {
            "items": [
                it.model_dump(mode="json", include={"menu_id", "quantity", "price", "notes"})
                for it in self.items
            ]
        }


class OfflineCategory(BaseModel):
    id: str
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    order: int = 0
    version: int = 1
    cached_at: datetime = Field(default_factory=utcnow)


class OfflineMenu(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: MinorUnits
    image: Optional[str] = None
    category_id: str
    is_available: bool = True
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cached_at: datetime = Field(default_factory=utcnow)


class OrderRef(BaseModel):
    entity_type: Literal["ORDER"] = "ORDER"
    order_id: str
    local_id: str


class SyncQueueItem(BaseModel):
    id: str
    operation: SyncOperation = "CREATE"
    entity: OrderRef
    sync_status: QueueStatus = "pending"
    retry_count: int = Field(default=0, ge=0)
    last_sync_attempt: Optional[datetime] = None
    conflict_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def queue_key(entity_type: str, local_id: str) -> str:
    # One queue entry per entity; re-enqueueing an edit reuses it.
    return f"{entity_type}:{local_id}"
