from typing import Optional

from fastapi import APIRouter, Depends

from ..db import get_conn
from ..deps import get_current_user
from .. import ledger
from ..validation import parse_uuid

router = APIRouter(tags=["catalog"])


@router.get("/category")
def list_categories(_user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"categories": ledger.list_categories(cur)}


@router.get("/menu")
def list_menus(category_id: Optional[str] = None, available: Optional[bool] = None, _user=Depends(get_current_user)):
    if category_id:
        category_id = parse_uuid(category_id, "category id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"menus": ledger.list_menus(cur, category_id=category_id, available=available)}
