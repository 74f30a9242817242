"""
Synchronizer: drains the Sync Queue into the authoritative ledger.

The ledger object only needs `apply_order_mutation(local_id, payload)` returning
`{"server_id": ..., "status": ...}`; it must be idempotent on local_id, which is
what makes replaying a pass after a crash between "ledger write succeeded" and
"local ack" safe.

Sync faults are absorbed into record state (retry_count, conflict_reason) and
reported; Local Store faults are not and propagate to the caller.
"""

import hashlib
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .cache import LocalCache
from .errors import RetryableSyncError, StorageError, SyncConflictError, SyncFailedError
from .jsonlog import json_log
from .models import OfflineOrder, SyncQueueItem, utcnow

BATCH_SIZE_DEFAULT = 50
MAX_ATTEMPTS_DEFAULT = 5


def next_retry_at_for_attempt(attempt_count: int, last_attempt: datetime, key: Optional[str] = None) -> datetime:
    delay_seconds = min(300, 2 ** max(attempt_count - 1, 0))
    if key:
        # Deterministic per-record jitter so terminals coming back online together
        # don't retry in lockstep.
        digest = hashlib.sha1(f"{key}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(300, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return last_attempt + timedelta(seconds=delay_seconds)


@dataclass
class SyncReport:
    synced: int = 0
    retried: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    superseded: int = 0
    errors: List[dict] = field(default_factory=list)
    duration_ms: int = 0
    busy: bool = False

    @property
    def processed(self) -> int:
        return self.synced + self.superseded + self.retried + self.conflicts + self.failed


class Synchronizer:
    def __init__(
        self,
        cache: LocalCache,
        ledger,
        *,
        batch_size: int = BATCH_SIZE_DEFAULT,
        max_attempts: int = MAX_ATTEMPTS_DEFAULT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.ledger = ledger
        self.batch_size = max(1, int(batch_size or BATCH_SIZE_DEFAULT))
        self.max_attempts = max(1, int(max_attempts or MAX_ATTEMPTS_DEFAULT))
        self.clock = clock
        self._drain_lock = threading.Lock()
        self._handlers = {
            "ORDER": self._sync_order,
        }

    def drain(self) -> SyncReport:
        if not self._drain_lock.acquire(blocking=False):
            return SyncReport(busy=True)
        started = time.time()
        report = SyncReport()
        try:
            for entry in self.cache.sync_queue.get_pending():
                if report.processed >= self.batch_size:
                    break
                if not self._is_due(entry):
                    report.skipped += 1
                    continue
                self._process(entry, report)
        finally:
            self._drain_lock.release()
        report.duration_ms = int((time.time() - started) * 1000)
        if report.processed:
            self.cache.settings.set("last_drain_at", self.clock().isoformat())
            json_log(
                "info",
                "sync.drain.done",
                synced=report.synced,
                retried=report.retried,
                superseded=report.superseded,
                conflicts=report.conflicts,
                failed=report.failed,
                skipped=report.skipped,
                duration_ms=report.duration_ms,
            )
        return report

    def _is_due(self, entry: SyncQueueItem) -> bool:
        if not entry.retry_count or entry.last_sync_attempt is None:
            return True
        due_at = next_retry_at_for_attempt(entry.retry_count, entry.last_sync_attempt, entry.entity.local_id)
        return self.clock() >= due_at

    def _process(self, entry: SyncQueueItem, report: SyncReport) -> None:
        entity_type = entry.entity.entity_type
        handler = self._handlers.get(entity_type)
        try:
            if handler is None:
                raise SyncFailedError(f"unknown entity type: {entity_type}")
            if handler(entry):
                report.synced += 1
            else:
                report.superseded += 1
        except (StorageError, sqlite3.Error):
            raise
        except SyncConflictError as ex:
            self._mark_conflict(entry, str(ex))
            report.conflicts += 1
            report.errors.append({"entity_id": entry.entity.local_id, "kind": ex.kind, "error": str(ex)})
        except SyncFailedError as ex:
            self._mark_failed(entry, str(ex))
            report.failed += 1
            report.errors.append({"entity_id": entry.entity.local_id, "kind": ex.kind, "error": str(ex)})
        except Exception as ex:
            # RetryableSyncError, plus anything unexpected from the transport:
            # never counted as success, never a hard failure.
            if not isinstance(ex, RetryableSyncError):
                json_log("error", "sync.order.unexpected_error", local_id=entry.entity.local_id, error=repr(ex))
            gave_up = self._record_retry(entry, str(ex) or type(ex).__name__)
            if gave_up:
                report.failed += 1
            else:
                report.retried += 1
            report.errors.append({"entity_id": entry.entity.local_id, "kind": "retryable", "error": str(ex)})

    # -- ORDER ---------------------------------------------------------------

    def _sync_order(self, entry: SyncQueueItem) -> bool:
        """Send one order. Returns False when a local edit superseded the sent version."""
        local_id = entry.entity.local_id
        order = self.cache.orders.get_by_local_id(local_id)
        if order is None:
            raise SyncFailedError(f"order {local_id} no longer exists locally")
        items = self.cache.order_items.get_by_order_id(order.id)
        if items:
            order = order.model_copy(update={"items": items})

        result = self.ledger.apply_order_mutation(local_id, order.sync_payload())
        server_id = (result or {}).get("server_id")
        if not server_id:
            raise RetryableSyncError("ledger response missing server_id")

        now = self.clock()
        with self.cache.store.transaction():
            current = self.cache.orders.get_by_local_id(local_id)
            if current is None:
                # Deleted by the operator mid-flight; the ledger has it, drop the entry.
                self.cache.sync_queue.delete(entry.id)
                return True
            if current.updated_at != order.updated_at:
                # Edited while the request was in flight: the ledger holds the older
                # version, so keep the entry and send the edit as an update next pass.
                self.cache.orders.update(current.model_copy(update={"server_id": str(server_id)}))
                self.cache.sync_queue.update(entry.model_copy(update={"operation": "UPDATE", "updated_at": now}))
                json_log("info", "sync.order.superseded", local_id=local_id, server_id=str(server_id))
                return False
            synced = OfflineOrder.model_validate(
                {
                    **current.model_dump(),
                    "server_id": str(server_id),
                    "status": result.get("status") or current.status,
                    "sync_status": "synced",
                    "synced_at": now,
                    "last_sync_attempt": now,
                    "conflict_reason": None,
                }
            )
            self.cache.orders.update(synced)
            self.cache.sync_queue.delete(entry.id)
        json_log("info", "sync.order.synced", local_id=local_id, server_id=str(server_id), order_number=order.order_number)
        return True

    # -- bookkeeping -----------------------------------------------------------

    def _record_retry(self, entry: SyncQueueItem, error: str) -> bool:
        now = self.clock()
        attempts = entry.retry_count + 1
        gave_up = attempts >= self.max_attempts
        with self.cache.store.transaction():
            order = self.cache.orders.get_by_local_id(entry.entity.local_id)
            if order is not None:
                update = {"retry_count": attempts, "last_sync_attempt": now}
                if gave_up:
                    update.update({"sync_status": "failed", "conflict_reason": error[:1000]})
                self.cache.orders.update(order.model_copy(update=update))
            self.cache.sync_queue.update(
                entry.model_copy(
                    update={
                        "retry_count": attempts,
                        "last_sync_attempt": now,
                        "sync_status": "failed" if gave_up else "pending",
                        "conflict_reason": error[:1000] if gave_up else entry.conflict_reason,
                        "updated_at": now,
                    }
                )
            )
        if gave_up:
            json_log("error", "sync.order.failed", local_id=entry.entity.local_id, attempts=attempts, error=error)
        else:
            json_log("warning", "sync.order.retry", local_id=entry.entity.local_id, attempts=attempts, error=error)
        return gave_up

    def _mark_conflict(self, entry: SyncQueueItem, reason: str) -> None:
        now = self.clock()
        with self.cache.store.transaction():
            order = self.cache.orders.get_by_local_id(entry.entity.local_id)
            if order is not None:
                self.cache.orders.update(
                    order.model_copy(
                        update={
                            "sync_status": "conflict",
                            "conflict_reason": reason[:1000],
                            "retry_count": order.retry_count + 1,
                            "last_sync_attempt": now,
                        }
                    )
                )
            # A conflict will not resolve itself by retrying.
            self.cache.sync_queue.delete(entry.id)
        json_log("warning", "sync.order.conflict", local_id=entry.entity.local_id, reason=reason)

    def _mark_failed(self, entry: SyncQueueItem, reason: str) -> None:
        now = self.clock()
        with self.cache.store.transaction():
            order = self.cache.orders.get_by_local_id(entry.entity.local_id)
            if order is not None:
                self.cache.orders.update(
                    order.model_copy(
                        update={"sync_status": "failed", "conflict_reason": reason[:1000], "last_sync_attempt": now}
                    )
                )
            self.cache.sync_queue.update(
                entry.model_copy(
                    update={"sync_status": "failed", "conflict_reason": reason[:1000], "last_sync_attempt": now, "updated_at": now}
                )
            )
        json_log("error", "sync.order.failed", local_id=entry.entity.local_id, error=reason)
