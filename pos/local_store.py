"""
Local Store: the terminal's durable, indexed cache.

A thin generic layer over SQLite. Each named collection maps to one table
holding the record as a JSON document plus one column per secondary index, so
"all pending orders" or "order by local id" are index lookups rather than scans.

Errors from sqlite3 are logged and re-raised unchanged: a swallowed local write
would silently desynchronize the cache from the ledger.
"""

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import StorageError
from .jsonlog import json_log

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sqlite_schema.sql")


@dataclass(frozen=True)
class IndexSpec:
    column: str
    # Dotted path into the record, e.g. "entity.entity_type".
    field: str


@dataclass(frozen=True)
class CollectionSpec:
    table: str
    key_field: str
    indexes: Dict[str, IndexSpec] = field(default_factory=dict)


COLLECTIONS: Dict[str, CollectionSpec] = {
    "orders": CollectionSpec(
        "orders",
        "id",
        {
            "by_sync_status": IndexSpec("sync_status", "sync_status"),
            "by_local_id": IndexSpec("local_id", "local_id"),
            "by_created_at": IndexSpec("created_at", "created_at"),
        },
    ),
    "orderItems": CollectionSpec("order_items", "id", {"by_order_id": IndexSpec("order_id", "order_id")}),
    "menus": CollectionSpec(
        "menus",
        "id",
        {
            "by_category_id": IndexSpec("category_id", "category_id"),
            "by_availability": IndexSpec("is_available", "is_available"),
            "by_version": IndexSpec("version", "version"),
        },
    ),
    "categories": CollectionSpec(
        "categories",
        "id",
        {
            "by_order": IndexSpec("sort_order", "order"),
            "by_version": IndexSpec("version", "version"),
        },
    ),
    "syncQueue": CollectionSpec(
        "sync_queue",
        "id",
        {
            "by_sync_status": IndexSpec("sync_status", "sync_status"),
            "by_entity_type": IndexSpec("entity_type", "entity.entity_type"),
            "by_created_at": IndexSpec("created_at", "created_at"),
        },
    ),
    "settings": CollectionSpec("settings", "key"),
}


def _spec(collection: str) -> CollectionSpec:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise KeyError(f"unknown collection: {collection}") from None


def _sql_value(v):
    # Index columns hold scalars; bools are stored as 0/1 so `True` matches `True`.
    if isinstance(v, bool):
        return 1 if v else 0
    if isinstance(v, datetime):
        return v.isoformat()
    return v


def _field_value(record: dict, path: str):
    cur: Any = record
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


class LocalStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._conn: Optional[sqlite3.Connection] = None

    # -- lifecycle ---------------------------------------------------------

    def open(self) -> "LocalStore":
        if not os.path.exists(SCHEMA_PATH):
            raise StorageError(f"Missing schema file: {SCHEMA_PATH}")
        with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
            schema = f.read()
        with self._lock:
            if self._conn is not None:
                return self
            try:
                # Autocommit mode: transactions are issued explicitly in transaction().
                conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
                if self.path != ":memory:":
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(schema)
            except sqlite3.Error as ex:
                json_log("error", "local_store.open.failed", path=self.path, error=str(ex))
                raise
            self._conn = conn
        json_log("debug", "local_store.opened", path=self.path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            conn, self._conn = self._conn, None
            try:
                conn.close()
            except sqlite3.Error as ex:
                json_log("error", "local_store.close.failed", path=self.path, error=str(ex))
                raise

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("local store is closed")
        return self._conn

    @contextmanager
    def _logged(self, op: str, collection: str):
        try:
            yield
        except sqlite3.Error as ex:
            json_log("error", f"local_store.{op}.failed", collection=collection, error=str(ex))
            raise

    @contextmanager
    def transaction(self):
        """Make every store operation inside the block one atomic unit.

        Nested blocks join the outermost one; only the outermost commits.
        """
        with self._lock:
            conn = self._require_conn()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            with self._logged("begin", "*"):
                conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self._rollback(conn)
                raise
            self._tx_depth = 0
            try:
                with self._logged("commit", "*"):
                    conn.execute("COMMIT")
            except BaseException:
                # A failed COMMIT can leave SQLite inside the transaction.
                self._rollback(conn)
                raise

    def _rollback(self, conn) -> None:
        # The caller re-raises the error that caused the rollback.
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as ex:
            json_log("error", "local_store.rollback.failed", error=str(ex))

    # -- generic operations ------------------------------------------------

    def get(self, collection: str, key: str) -> Optional[dict]:
        spec = _spec(collection)
        with self._lock, self._logged("get", collection):
            row = self._require_conn().execute(
                f"SELECT doc FROM {spec.table} WHERE pk = ?", (key,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def get_all(self, collection: str) -> List[dict]:
        spec = _spec(collection)
        with self._lock, self._logged("get_all", collection):
            rows = self._require_conn().execute(f"SELECT doc FROM {spec.table} ORDER BY pk").fetchall()
        return [json.loads(r[0]) for r in rows]

    def get_all_by_index(self, collection: str, index_name: str, value) -> List[dict]:
        spec = _spec(collection)
        idx = spec.indexes.get(index_name)
        if idx is None:
            raise ValueError(f"unknown index {index_name!r} on {collection}")
        with self._lock, self._logged("get_all_by_index", collection):
            rows = self._require_conn().execute(
                f"SELECT doc FROM {spec.table} WHERE {idx.column} = ? ORDER BY pk",
                (_sql_value(value),),
            ).fetchall()
        return [json.loads(r[0]) for r in rows]

    def _put_row(self, spec: CollectionSpec, record: dict) -> str:
        key = record.get(spec.key_field)
        if key is None or key == "":
            raise ValueError(f"record missing key field {spec.key_field!r}")
        cols = [idx.column for idx in spec.indexes.values()]
        values = [_sql_value(_field_value(record, idx.field)) for idx in spec.indexes.values()]
        col_sql = "".join(f", {c}" for c in cols)
        placeholders = ", ?" * len(cols)
        updates = "".join(f", {c}=excluded.{c}" for c in cols)
        self._require_conn().execute(
            f"""
            INSERT INTO {spec.table} (pk, doc{col_sql})
            VALUES (?, ?{placeholders})
            ON CONFLICT(pk) DO UPDATE SET doc=excluded.doc{updates}
            """,
            (str(key), json.dumps(record, default=str), *values),
        )
        return str(key)

    def put(self, collection: str, record: dict) -> str:
        spec = _spec(collection)
        with self.transaction(), self._logged("put", collection):
            return self._put_row(spec, record)

    def put_many(self, collection: str, records: Iterable[dict]) -> List[str]:
        spec = _spec(collection)
        with self.transaction(), self._logged("put_many", collection):
            return [self._put_row(spec, r) for r in records]

    def delete(self, collection: str, key: str) -> None:
        spec = _spec(collection)
        with self.transaction(), self._logged("delete", collection):
            self._require_conn().execute(f"DELETE FROM {spec.table} WHERE pk = ?", (key,))

    def clear(self, collection: str) -> None:
        spec = _spec(collection)
        with self.transaction(), self._logged("clear", collection):
            self._require_conn().execute(f"DELETE FROM {spec.table}")

    def count(self, collection: str) -> int:
        spec = _spec(collection)
        with self._lock, self._logged("count", collection):
            row = self._require_conn().execute(f"SELECT COUNT(1) FROM {spec.table}").fetchone()
        return int(row[0])


@contextmanager
def open_local_store(path: str):
    store = LocalStore(path).open()
    try:
        yield store
    finally:
        store.close()
