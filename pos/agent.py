#!/usr/bin/env python3
"""
POS terminal agent.

Keeps the local cache usable offline and pushes queued order mutations to the
API server whenever it is reachable:

    pos-agent --init-db            create the local schema and exit
    pos-agent --once               one connectivity check + drain + catalog refresh
    pos-agent                      loop forever (drains on connectivity regain and periodically)
    pos-agent --status             print pending/conflict counts as JSON
"""

import argparse
import json
import sys
import time
import traceback
from datetime import datetime, timedelta
from typing import Optional

from .cache import LocalCache
from .catalog import CatalogRefresher
from .config import CONFIG_PATH, load_config
from .jsonlog import json_log
from .ledger_client import HttpLedgerClient
from .local_store import open_local_store
from .models import utcnow
from .sync_queue import SyncQueue
from .synchronizer import Synchronizer


class AgentRuntime:
    def __init__(self, cfg: dict, cache: LocalCache, ledger=None):
        self.cfg = cfg
        self.cache = cache
        self.ledger = ledger or HttpLedgerClient(
            cfg.get("api_base_url"),
            token=cfg.get("api_token") or "",
            timeout_s=cfg.get("request_timeout_s") or 10,
        )
        self.queue = SyncQueue(cache)
        self.synchronizer = Synchronizer(
            cache,
            self.ledger,
            batch_size=cfg.get("sync_batch_size"),
            max_attempts=cfg.get("sync_max_attempts"),
        )
        self.refresher = CatalogRefresher(cache, self.ledger)
        self.online: Optional[bool] = None

    def _catalog_due(self, now: datetime) -> bool:
        raw = self.cache.settings.get("catalog_refreshed_at")
        if not raw:
            return True
        try:
            last = datetime.fromisoformat(str(raw))
        except ValueError:
            return True
        interval = timedelta(seconds=int(self.cfg.get("catalog_refresh_interval_s") or 900))
        return now - last >= interval

    def run_pass(self) -> dict:
        online = self.ledger.health()
        if online != self.online:
            json_log("info", "connectivity.regained" if online else "connectivity.lost", pending=self.queue.pending_count())
        self.online = online
        if not online:
            return {"online": False, "synced": 0}

        out = {"online": True}
        report = self.synchronizer.drain()
        out.update({"synced": report.synced, "superseded": report.superseded, "retried": report.retried, "conflicts": report.conflicts, "failed": report.failed})

        if self._catalog_due(utcnow()):
            try:
                out["catalog"] = self.refresher.refresh()
            except Exception as ex:
                # A stale catalog is still usable; keep going.
                json_log("error", "catalog.refresh.error", error=str(ex))
        return out

    def status(self) -> dict:
        orders = self.cache.orders
        return {
            "pending": len(orders.get_pending_sync()),
            "conflict": len(self.cache.store.get_all_by_index("orders", "by_sync_status", "conflict")),
            "failed": len(self.cache.store.get_all_by_index("orders", "by_sync_status", "failed")),
            "queue": self.queue.pending_count(),
            "last_drain_at": self.cache.settings.get("last_drain_at"),
            "catalog_refreshed_at": self.cache.settings.get("catalog_refreshed_at"),
        }


def main(argv=None):
    parser = argparse.ArgumentParser(prog="pos-agent")
    parser.add_argument("--config", default=CONFIG_PATH, help="Config JSON path (default: ./pos-config.json or $POS_CONFIG_PATH)")
    parser.add_argument("--db", default=None, help="SQLite cache path (overrides config db_path)")
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--status", action="store_true", help="Print sync status and exit")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    db_path = args.db or cfg.get("db_path")

    with open_local_store(db_path) as store:
        if args.init_db:
            print("ok")
            return 0
        runtime = AgentRuntime(cfg, LocalCache(store))
        if args.status:
            print(json.dumps(runtime.status(), default=str))
            return 0

        interval = float(cfg.get("sync_interval_s") or 30)
        while True:
            did_work = False
            try:
                res = runtime.run_pass()
                did_work = bool(res.get("synced") or res.get("superseded"))
            except Exception as ex:
                # Never crash the agent loop; local store faults are logged and retried next pass.
                json_log("error", "agent.pass.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
            if args.once:
                break
            try:
                time.sleep(0 if did_work else interval)
            except KeyboardInterrupt:
                break
    return 0


if __name__ == "__main__":
    sys.exit(main())
