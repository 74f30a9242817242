from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ValidationError as PydanticValidationError
from psycopg import errors as pg_errors

from ..db import get_conn
from ..deps import get_current_user
from ..errors import PosError
from ..jsonlog import json_log
from .. import ledger
from .orders import OrderIn, order_payload

router = APIRouter(prefix="/sync", tags=["sync"])


class OrderMutationIn(BaseModel):
    local_id: str
    order: OrderIn


class SyncBatchIn(BaseModel):
    orders: List[dict]


@router.post("/orders")
def sync_order(data: OrderMutationIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            res = ledger.apply_order_mutation(cur, data.local_id, order_payload(data.order), user["user_id"])
    json_log(
        "info",
        "sync.order.applied",
        local_id=data.local_id,
        server_id=res["server_id"],
        created=res["created"],
        user_id=str(user["user_id"]),
    )
    return res


@router.post("")
def sync_batch(data: SyncBatchIn, user=Depends(get_current_user)):
    """
    Apply many order mutations; each one commits or fails on its own
    (savepoint per order) so one bad order never blocks the rest.
    """
    synced: list[dict] = []
    failed: list[dict] = []
    with get_conn() as conn:
        for raw in data.orders:
            local_id = str((raw or {}).get("local_id") or "").strip()
            try:
                body = OrderMutationIn.model_validate(
                    {"local_id": local_id, "order": raw.get("order") if isinstance(raw.get("order"), dict) else raw}
                )
                with conn.transaction():
                    with conn.cursor() as cur:
                        res = ledger.apply_order_mutation(cur, body.local_id, order_payload(body.order), user["user_id"])
                synced.append({"local_id": local_id, **res})
            except PydanticValidationError as ex:
                failed.append({"local_id": local_id, "error": "validation failed", "details": str(ex.errors())[:1000]})
            except PosError as ex:
                failed.append({"local_id": local_id, "error": ex.detail, "details": ex.details})
            except (pg_errors.IntegrityError, pg_errors.DataError) as ex:
                failed.append({"local_id": local_id, "error": "rejected by ledger", "details": str(ex)[:1000]})
    json_log("info", "sync.batch.done", synced=len(synced), failed=len(failed), user_id=str(user["user_id"]))
    return {"synced": synced, "failed": failed}
