from typing import Iterable, Optional

from .cache import LocalCache
from .jsonlog import json_log
from .models import OfflineOrder, OfflineOrderItem, OrderRef, SyncQueueItem, queue_key, utcnow


class SyncQueue:
    """Writer side of the outbound worklist.

    Every local order mutation goes through enqueue_order so the order row and
    its queue entry are written in one local transaction.
    """

    def __init__(self, cache: LocalCache):
        self.cache = cache

    def enqueue_order(
        self,
        order: OfflineOrder,
        items: Optional[Iterable[OfflineOrderItem]] = None,
    ) -> SyncQueueItem:
        now = utcnow()
        lines = [
            it if it.order_id == order.id else it.model_copy(update={"order_id": order.id})
            for it in (items if items is not None else order.items)
        ]
        pending = order.model_copy(
            update={
                "items": lines,
                "sync_status": "pending",
                "synced_at": None,
                "conflict_reason": None,
                "updated_at": now,
            }
        )
        key = queue_key("ORDER", order.local_id)
        with self.cache.store.transaction():
            existing = self.cache.sync_queue.get(key)
            self.cache.orders.update(pending)
            self.cache.order_items.delete_for_order(order.id)
            self.cache.order_items.add_many(lines)
            entry = SyncQueueItem(
                id=key,
                operation="UPDATE" if order.server_id else "CREATE",
                entity=OrderRef(order_id=order.id, local_id=order.local_id),
                sync_status="pending",
                retry_count=existing.retry_count if existing else 0,
                last_sync_attempt=existing.last_sync_attempt if existing else None,
                # Keep the original position so edits never jump ahead of the create.
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.cache.sync_queue.update(entry)
        json_log(
            "info",
            "sync.order.enqueued",
            local_id=order.local_id,
            order_number=order.order_number,
            operation=entry.operation,
        )
        return entry

    def request_retry(self, local_id: str) -> Optional[SyncQueueItem]:
        """Put a conflict/failed order back in line. No-op for pending or synced orders."""
        order = self.cache.orders.get_by_local_id(local_id)
        if order is None:
            raise KeyError(f"no local order with local_id {local_id}")
        if order.sync_status not in {"conflict", "failed"}:
            return self.cache.sync_queue.get(queue_key("ORDER", local_id))
        now = utcnow()
        key = queue_key("ORDER", local_id)
        with self.cache.store.transaction():
            existing = self.cache.sync_queue.get(key)
            self.cache.orders.update(
                order.model_copy(
                    update={
                        "sync_status": "pending",
                        "retry_count": 0,
                        "last_sync_attempt": None,
                        "conflict_reason": None,
                        "updated_at": now,
                    }
                )
            )
            entry = SyncQueueItem(
                id=key,
                operation="UPDATE" if order.server_id else "CREATE",
                entity=OrderRef(order_id=order.id, local_id=local_id),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.cache.sync_queue.update(entry)
        json_log("info", "sync.order.retry_requested", local_id=local_id, previous=order.sync_status)
        return entry

    def pending_count(self) -> int:
        return len(self.cache.store.get_all_by_index("syncQueue", "by_sync_status", "pending"))
