from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from fastapi.testclient import TestClient

from backend.app import ledger, shifts
from backend.app import main as app_main
from backend.app.deps import get_current_user
from backend.app.errors import AlreadyClosedError, UnresolvedOrdersError
from backend.app.routers import orders as orders_router
from backend.app.routers import shifts as shifts_router
from backend.app.routers import sync as sync_router

SHIFT_ID = "6f9619ff-8b86-d011-b42d-00cf4fc964ff"
USER = {"user_id": "user-1", "email": "kasir@warung.local", "name": "Kasir", "role": "CASHIER"}


class _FakeConn:
    def __init__(self):
        self.savepoints = 0

    @contextmanager
    def cursor(self):
        yield object()

    @contextmanager
    def transaction(self):
        self.savepoints += 1
        yield


@pytest.fixture
def client(monkeypatch):
    conn = _FakeConn()

    @contextmanager
    def _fake_get_conn():
        yield conn

    for mod in (shifts_router, orders_router, sync_router, app_main):
        monkeypatch.setattr(mod, "get_conn", _fake_get_conn)
    activity_calls = []
    monkeypatch.setattr(shifts_router, "log_activity", lambda *a, **k: activity_calls.append(a))
    app_main.app.dependency_overrides[get_current_user] = lambda: dict(USER)
    c = TestClient(app_main.app, raise_server_exceptions=False)
    c.activity_calls = activity_calls
    c.conn = conn
    try:
        yield c
    finally:
        app_main.app.dependency_overrides.clear()


def _own_shift(status="OPEN", user_id="user-1"):
    return {
        "id": SHIFT_ID,
        "user_id": user_id,
        "status": status,
        "starting_cash": 500000,
        "opened_at": datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
        "closed_at": None,
    }


def test_unresolved_orders_map_to_409_with_order_list(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: _own_shift())

    def _blocked(*_a, **_k):
        raise UnresolvedOrdersError(
            [
                {"id": "o-1", "order_number": "ORD-1", "status": "PENDING"},
                {"id": "o-2", "order_number": "ORD-2", "status": "PROCESSING"},
            ]
        )

    monkeypatch.setattr(shifts, "close_shift", _blocked)
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": 535000})
    assert res.status_code == 409
    body = res.json()
    assert body["detail"] == "Cannot close shift with unresolved orders"
    assert body["details"] == "Orders: ORD-1 (PENDING), ORD-2 (PROCESSING)"
    assert [o["order_number"] for o in body["orders"]] == ["ORD-1", "ORD-2"]
    assert client.activity_calls == []


def test_already_closed_maps_to_409(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: _own_shift("CLOSED"))

    def _closed(cur, shift_id, *_a, **_k):
        raise AlreadyClosedError(shift_id)

    monkeypatch.setattr(shifts, "close_shift", _closed)
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": 1})
    assert res.status_code == 409
    assert res.json()["detail"] == "Shift is already closed"


def test_missing_shift_maps_to_404(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: None)
    monkeypatch.setattr(ledger, "lock_shift", lambda cur, sid: None)
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": 1000})
    assert res.status_code == 404


def test_negative_ending_cash_maps_to_400(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: _own_shift())
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": -5})
    assert res.status_code == 400
    assert "non-negative" in res.json()["detail"]


def test_malformed_shift_id_maps_to_400(client):
    res = client.post("/shift/not-a-uuid/close", json={"ending_cash": 1000})
    assert res.status_code == 400


def test_unparseable_body_maps_to_422(client):
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": "lots of cash"})
    assert res.status_code == 422


def test_closing_someone_elses_shift_is_forbidden(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: _own_shift(user_id="user-2"))
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": 1000})
    assert res.status_code == 403


def test_successful_close_logs_activity(client, monkeypatch):
    monkeypatch.setattr(ledger, "get_shift", lambda cur, sid, lock=None: _own_shift())
    closed = dict(_own_shift("CLOSED"), ending_cash=535000, expected_cash=533000, discrepancy=2000)
    monkeypatch.setattr(
        shifts,
        "close_shift",
        lambda cur, sid, ending, notes=None, terminal_statuses=None: {"shift": closed, "sales": {"cash_sales": 33000}},
    )
    res = client.post(f"/shift/{SHIFT_ID}/close", json={"ending_cash": 535000})
    assert res.status_code == 200
    assert res.json()["shift"]["discrepancy"] == 2000
    assert client.activity_calls[0][2] == "SHIFT_CLOSE"


def test_database_outage_maps_to_503(client, monkeypatch):
    @contextmanager
    def _down():
        raise psycopg.OperationalError("connection refused")
        yield

    monkeypatch.setattr(shifts_router, "get_conn", _down)
    res = client.get("/shift/current")
    assert res.status_code == 503
    assert res.json()["detail"] == "temporarily unavailable, try again"


def test_unexpected_error_maps_to_500_with_request_id(client, monkeypatch):
    def _boom(*_a, **_k):
        raise RuntimeError("boom")

    monkeypatch.setattr(ledger, "find_open_shift", _boom)
    res = client.get("/shift/current", headers={"X-Request-Id": "req-123"})
    assert res.status_code == 500
    assert res.json()["request_id"] == "req-123"


def test_sync_order_replay_returns_same_server_id(client, monkeypatch):
    seen = {}

    def _apply(cur, local_id, payload, user_id):
        created = local_id not in seen
        seen.setdefault(local_id, "srv-1")
        return {"server_id": seen[local_id], "status": payload["status"], "created": created}

    monkeypatch.setattr(ledger, "apply_order_mutation", _apply)
    body = {
        "local_id": "local-1",
        "order": {
            "order_number": "ORD-1",
            "subtotal": 30000,
            "tax": 3000,
            "total": 33000,
            "payment_method": "cash",
            "status": "completed",
            "items": [{"menu_id": "menu-1", "quantity": 2, "price": 15000}],
        },
    }
    first = client.post("/sync/orders", json=body)
    second = client.post("/sync/orders", json=body)
    assert first.status_code == 200
    assert first.json() == {"server_id": "srv-1", "status": "COMPLETED", "created": True}
    assert second.json()["created"] is False


def test_sync_batch_isolates_bad_orders(client, monkeypatch):
    monkeypatch.setattr(
        ledger,
        "apply_order_mutation",
        lambda cur, local_id, payload, user_id: {"server_id": f"srv-{local_id}", "status": "PENDING", "created": True},
    )
    good = {"local_id": "a", "subtotal": 1000, "total": 1000, "payment_method": "QRIS"}
    bad = {"local_id": "b", "subtotal": 1000, "total": 1000, "payment_method": "BARTER"}
    res = client.post("/sync", json={"orders": [good, bad]})
    assert res.status_code == 200
    body = res.json()
    assert [s["local_id"] for s in body["synced"]] == ["a"]
    assert [f["local_id"] for f in body["failed"]] == ["b"]
    assert client.conn.savepoints == 1


def test_health_reports_db_down(client, monkeypatch):
    @contextmanager
    def _down():
        raise psycopg.OperationalError("connection refused")
        yield

    monkeypatch.setattr(app_main, "get_conn", _down)
    res = client.get("/health")
    assert res.status_code == 503
    assert res.json()["ok"] is False


def test_health_ok_echoes_request_id(client, monkeypatch):
    class _Cur:
        def execute(self, *_a):
            pass

        def fetchone(self):
            return {"ok": 1}

    class _Conn:
        @contextmanager
        def cursor(self):
            yield _Cur()

    @contextmanager
    def _up():
        yield _Conn()

    monkeypatch.setattr(app_main, "get_conn", _up)
    res = client.get("/health", headers={"X-Request-Id": "abc"})
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.headers["X-Request-Id"] == "abc"
