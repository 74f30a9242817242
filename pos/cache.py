from __future__ import annotations

from typing import Any, Iterable, List, Optional

from .local_store import LocalStore
from .models import (
    OfflineCategory,
    OfflineMenu,
    OfflineOrder,
    OfflineOrderItem,
    SyncQueueItem,
    utcnow,
)


def _doc(model) -> dict:
    return model.model_dump(mode="json")


class _Collection:
    name = ""
    model: Any = None

    def __init__(self, store: LocalStore):
        self.store = store

    def _load(self, raw: Optional[dict]):
        return self.model.model_validate(raw) if raw is not None else None

    def _load_all(self, raws: Iterable[dict]) -> list:
        return [self.model.model_validate(r) for r in raws]

    def add(self, record) -> str:
        return self.store.put(self.name, _doc(record))

    update = add

    def get(self, key: str):
        return self._load(self.store.get(self.name, key))

    def get_all(self) -> list:
        return self._load_all(self.store.get_all(self.name))

    def delete(self, key: str) -> None:
        self.store.delete(self.name, key)

    def clear(self) -> None:
        self.store.clear(self.name)

    def count(self) -> int:
        return self.store.count(self.name)


class OrdersCollection(_Collection):
    name = "orders"
    model = OfflineOrder

    def get_by_local_id(self, local_id: str) -> Optional[OfflineOrder]:
        rows = self.store.get_all_by_index(self.name, "by_local_id", local_id)
        return self._load(rows[0]) if rows else None

    def get_pending_sync(self) -> List[OfflineOrder]:
        return self._load_all(self.store.get_all_by_index(self.name, "by_sync_status", "pending"))


class OrderItemsCollection(_Collection):
    name = "orderItems"
    model = OfflineOrderItem

    def add_many(self, items: Iterable[OfflineOrderItem]) -> List[str]:
        return self.store.put_many(self.name, [_doc(i) for i in items])

    def get_by_order_id(self, order_id: str) -> List[OfflineOrderItem]:
        return self._load_all(self.store.get_all_by_index(self.name, "by_order_id", order_id))

    def delete_for_order(self, order_id: str) -> None:
        with self.store.transaction():
            for item in self.get_by_order_id(order_id):
                self.store.delete(self.name, item.id)


class _CatalogCollection(_Collection):
    def add_many(self, records: Iterable) -> List[str]:
        return self.store.put_many(self.name, [_doc(r) for r in records])

    def replace_all(self, records: Iterable) -> List[str]:
        # Clear and refill in one transaction: readers never see half a catalog.
        with self.store.transaction():
            self.store.clear(self.name)
            return self.store.put_many(self.name, [_doc(r) for r in records])


class MenusCollection(_CatalogCollection):
    name = "menus"
    model = OfflineMenu

    def get_by_category(self, category_id: str) -> List[OfflineMenu]:
        return self._load_all(self.store.get_all_by_index(self.name, "by_category_id", category_id))

    def get_available(self) -> List[OfflineMenu]:
        return self._load_all(self.store.get_all_by_index(self.name, "by_availability", True))


class CategoriesCollection(_CatalogCollection):
    name = "categories"
    model = OfflineCategory

    def get_all(self) -> List[OfflineCategory]:
        return sorted(super().get_all(), key=lambda c: (c.order, c.name))


class SyncQueueCollection(_Collection):
    name = "syncQueue"
    model = SyncQueueItem

    def get_pending(self) -> List[SyncQueueItem]:
        """Pending entries, oldest first."""
        items = self._load_all(self.store.get_all_by_index(self.name, "by_sync_status", "pending"))
        return sorted(items, key=lambda q: (q.created_at, q.id))

    def get_by_entity_type(self, entity_type: str) -> List[SyncQueueItem]:
        items = self._load_all(self.store.get_all_by_index(self.name, "by_entity_type", entity_type))
        return sorted(items, key=lambda q: (q.created_at, q.id))


class SettingsCollection:
    name = "settings"

    def __init__(self, store: LocalStore):
        self.store = store

    def get(self, key: str, default=None):
        row = self.store.get(self.name, key)
        return row["value"] if row else default

    def set(self, key: str, value) -> str:
        return self.store.put(self.name, {"key": key, "value": value, "updated_at": utcnow().isoformat()})

    def delete(self, key: str) -> None:
        self.store.delete(self.name, key)

    def clear(self) -> None:
        self.store.clear(self.name)


class LocalCache:
    """All collection accessors over one explicitly constructed store."""

    def __init__(self, store: LocalStore):
        self.store = store
        self.orders = OrdersCollection(store)
        self.order_items = OrderItemsCollection(store)
        self.menus = MenusCollection(store)
        self.categories = CategoriesCollection(store)
        self.sync_queue = SyncQueueCollection(store)
        self.settings = SettingsCollection(store)

    def clear_all(self) -> None:
        # Logout / cache invalidation. Unsynced orders go too, so callers check
        # orders.get_pending_sync() first.
        with self.store.transaction():
            for c in (self.orders, self.order_items, self.menus, self.categories, self.sync_queue, self.settings):
                c.clear()
