import json
from datetime import datetime, timedelta, timezone

import pytest

from pos import agent
from pos.agent import AgentRuntime
from pos.cache import LocalCache
from pos.config import load_config
from pos.catalog import CatalogRefresher
from pos.errors import RetryableSyncError
from pos.local_store import open_local_store
from pos.models import OfflineOrder
from pos.sync_queue import SyncQueue

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _FakeLedger:
    def __init__(self, categories=None, menus=None, online=True):
        self.categories = list(categories or [])
        self.menus = list(menus or [])
        self.online = online
        self.fail_menus = False
        self.applied = []

    def fetch_categories(self):
        return list(self.categories)

    def fetch_menus(self):
        if self.fail_menus:
            raise RetryableSyncError("ledger unreachable: timed out")
        return list(self.menus)

    def health(self):
        return self.online

    def apply_order_mutation(self, local_id, payload):
        self.applied.append(local_id)
        return {"server_id": f"srv-{local_id}", "status": payload["status"]}


CATEGORIES = [
    {"id": "c-2", "name": "Minuman", "order": 2, "version": 1},
    {"id": "c-1", "name": "Makanan", "order": 1, "version": 3},
]
MENUS = [
    {"id": "m-1", "name": "Nasi Goreng", "price": 25000, "category_id": "c-1", "is_available": True},
    {"id": "m-2", "name": "Es Teh", "price": 5000, "category_id": "c-2", "is_available": False},
]


@pytest.fixture
def cache(tmp_path):
    with open_local_store(str(tmp_path / "pos.sqlite")) as store:
        yield LocalCache(store)


def test_refresh_replaces_catalog_and_stamps_time(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS)
    out = CatalogRefresher(cache, ledger, clock=lambda: T0).refresh()

    assert out["categories"] == 2 and out["menus"] == 2
    assert [c.name for c in cache.categories.get_all()] == ["Makanan", "Minuman"]
    assert [m.id for m in cache.menus.get_available()] == ["m-1"]
    assert [m.id for m in cache.menus.get_by_category("c-2")] == ["m-2"]
    assert cache.menus.get("m-1").cached_at == T0
    assert cache.settings.get("catalog_refreshed_at") == T0.isoformat()


def test_refresh_drops_items_removed_upstream(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS)
    refresher = CatalogRefresher(cache, ledger, clock=lambda: T0)
    refresher.refresh()
    ledger.menus = MENUS[:1]
    refresher.refresh()
    assert cache.menus.count() == 1


def test_failed_fetch_keeps_previous_catalog(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS)
    refresher = CatalogRefresher(cache, ledger, clock=lambda: T0)
    refresher.refresh()
    ledger.categories = []
    ledger.fail_menus = True
    with pytest.raises(RetryableSyncError):
        refresher.refresh()
    assert cache.categories.count() == 2
    assert cache.menus.count() == 2


def test_clear_all_empties_every_collection(cache):
    CatalogRefresher(cache, _FakeLedger(CATEGORIES, MENUS)).refresh()
    SyncQueue(cache).enqueue_order(OfflineOrder(order_number="ORD-1", user_id="u-1", subtotal=1000, total=1000))
    cache.clear_all()
    for name in ("orders", "orderItems", "menus", "categories", "syncQueue", "settings"):
        assert cache.store.count(name) == 0


def _runtime(cache, ledger):
    cfg = {"sync_batch_size": 50, "sync_max_attempts": 5, "catalog_refresh_interval_s": 900}
    return AgentRuntime(cfg, cache, ledger=ledger)


def test_offline_pass_leaves_queue_alone(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS, online=False)
    rt = _runtime(cache, ledger)
    rt.queue.enqueue_order(OfflineOrder(order_number="ORD-1", user_id="u-1", subtotal=1000, total=1000))

    assert rt.run_pass() == {"online": False, "synced": 0}
    assert ledger.applied == []
    assert rt.status()["pending"] == 1


def test_online_pass_drains_and_refreshes_catalog(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS)
    rt = _runtime(cache, ledger)
    order = OfflineOrder(order_number="ORD-1", user_id="u-1", subtotal=1000, total=1000)
    rt.queue.enqueue_order(order)

    out = rt.run_pass()
    assert out["online"] is True
    assert out["synced"] == 1
    assert out["catalog"]["menus"] == 2
    status = rt.status()
    assert status["pending"] == 0
    assert status["queue"] == 0


def test_catalog_refresh_waits_for_interval(cache):
    rt = _runtime(cache, _FakeLedger(CATEGORIES, MENUS))
    now = datetime.now(timezone.utc)
    cache.settings.set("catalog_refreshed_at", now.isoformat())
    assert rt._catalog_due(now + timedelta(seconds=60)) is False
    assert rt._catalog_due(now + timedelta(seconds=901)) is True


def test_catalog_failure_does_not_abort_pass(cache):
    ledger = _FakeLedger(CATEGORIES, MENUS)
    ledger.fail_menus = True
    out = _runtime(cache, ledger).run_pass()
    assert out["online"] is True
    assert "catalog" not in out


def test_cli_init_db_and_status(tmp_path, capsys):
    cfg_path = tmp_path / "pos-config.json"
    db_path = tmp_path / "cache.sqlite"
    assert agent.main(["--config", str(cfg_path), "--db", str(db_path), "--init-db"]) == 0
    assert db_path.exists()
    assert cfg_path.exists()
    capsys.readouterr()

    assert agent.main(["--config", str(cfg_path), "--db", str(db_path), "--status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["pending"] == 0
    assert status["queue"] == 0


def test_default_config_written_on_first_load(tmp_path):
    path = tmp_path / "pos-config.json"
    cfg = load_config(str(path))
    assert path.exists()
    assert cfg["sync_batch_size"] == 50
    assert "user_id" not in cfg
    assert "shift_id" not in cfg
