import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..db import get_conn
from ..deps import get_current_user
from ..errors import NotFoundError
from .. import ledger
from ..validation import MinorUnits, OrderStatus, PaymentMethod, parse_uuid

router = APIRouter(prefix="/order", tags=["order"])


class OrderItemIn(BaseModel):
    menu_id: str
    quantity: int = Field(gt=0)
    price: MinorUnits
    notes: Optional[str] = None


class OrderIn(BaseModel):
    order_number: Optional[str] = None
    shift_id: Optional[str] = None
    subtotal: MinorUnits
    tax: MinorUnits = 0
    discount: MinorUnits = 0
    total: MinorUnits
    payment_method: PaymentMethod
    status: OrderStatus = "PENDING"
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemIn] = Field(default_factory=list)


class OrderCreateIn(OrderIn):
    # Online clients may still send their own idempotency key.
    local_id: Optional[str] = None


class OrderStatusIn(BaseModel):
    status: OrderStatus


def order_payload(data: OrderIn) -> dict:
    payload = data.model_dump(exclude={"local_id"})
    if payload.get("shift_id"):
        payload["shift_id"] = parse_uuid(payload["shift_id"], "shift id")
    return payload


@router.get("")
def list_orders(
    shift_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    limit: int = 100,
    _user=Depends(get_current_user),
):
    if shift_id:
        shift_id = parse_uuid(shift_id, "shift id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"orders": ledger.list_orders(cur, shift_id=shift_id, status=status, limit=max(1, min(int(limit or 100), 500)))}


@router.post("")
def create_order(data: OrderCreateIn, user=Depends(get_current_user)):
    local_id = (data.local_id or "").strip() or str(uuid.uuid4())
    with get_conn() as conn:
        with conn.cursor() as cur:
            res = ledger.apply_order_mutation(cur, local_id, order_payload(data), user["user_id"])
            return {"order": ledger.get_order(cur, res["server_id"]), "created": res["created"]}


@router.get("/{order_id}")
def get_order(order_id: str, _user=Depends(get_current_user)):
    order_id = parse_uuid(order_id, "order id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            order = ledger.get_order(cur, order_id)
            if not order:
                raise NotFoundError("Order not found", f"order {order_id}")
            return {"order": order}


@router.patch("/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusIn, _user=Depends(get_current_user)):
    order_id = parse_uuid(order_id, "order id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"order": ledger.update_order_status(cur, order_id, data.status)}
