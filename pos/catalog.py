from typing import Callable

from .cache import LocalCache
from .jsonlog import json_log
from .models import OfflineCategory, OfflineMenu, utcnow


class CatalogRefresher:
    """Replaces the cached menu catalog wholesale from the ledger."""

    def __init__(self, cache: LocalCache, ledger, clock: Callable = utcnow):
        self.cache = cache
        self.ledger = ledger
        self.clock = clock

    def refresh(self) -> dict:
        # Fetch everything before touching the cache so a dropped connection
        # leaves the previous catalog in place.
        raw_categories = self.ledger.fetch_categories()
        raw_menus = self.ledger.fetch_menus()
        now = self.clock()
        categories = [OfflineCategory.model_validate({**c, "cached_at": now}) for c in raw_categories]
        menus = [OfflineMenu.model_validate({**m, "cached_at": now}) for m in raw_menus]
        with self.cache.store.transaction():
            self.cache.categories.replace_all(categories)
            self.cache.menus.replace_all(menus)
            self.cache.settings.set("catalog_refreshed_at", now.isoformat())
        json_log("info", "catalog.refreshed", categories=len(categories), menus=len(menus))
        return {"categories": len(categories), "menus": len(menus), "refreshed_at": now}
