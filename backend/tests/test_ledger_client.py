import io
import json
from urllib.error import HTTPError, URLError

import pytest

from pos import ledger_client
from pos.errors import RetryableSyncError, SyncConflictError
from pos.ledger_client import HttpLedgerClient


class _Resp:
    def __init__(self, body):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _http_error(code, body=b""):
    return HTTPError("http://ledger/sync/orders", code, "err", {}, io.BytesIO(body))


@pytest.fixture
def captured(monkeypatch):
    calls = []
    responses = []

    def _urlopen(req, timeout=None):
        calls.append({"req": req, "timeout": timeout})
        nxt = responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return _Resp(nxt)

    monkeypatch.setattr(ledger_client, "urlopen", _urlopen)
    return calls, responses


def test_apply_order_mutation_posts_payload_with_bearer_token(captured):
    calls, responses = captured
    responses.append(json.dumps({"server_id": "srv-1", "status": "PENDING", "created": True}).encode())
    client = HttpLedgerClient("http://ledger/", token="tok-1", timeout_s=3)

    res = client.apply_order_mutation("local-1", {"total": 33000})
    assert res["server_id"] == "srv-1"
    req = calls[0]["req"]
    assert req.full_url == "http://ledger/sync/orders"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer tok-1"
    assert json.loads(req.data) == {"local_id": "local-1", "order": {"total": 33000}}
    assert calls[0]["timeout"] == 3.0


@pytest.mark.parametrize("code", [500, 502, 503, 408, 429, 401])
def test_transient_statuses_are_retryable(captured, code):
    _calls, responses = captured
    responses.append(_http_error(code))
    with pytest.raises(RetryableSyncError) as ei:
        HttpLedgerClient("http://ledger").apply_order_mutation("local-1", {})
    assert ei.value.status_code == code


def test_rejections_are_conflicts_with_server_detail(captured):
    _calls, responses = captured
    body = json.dumps({"detail": "Shift is closed", "details": "shift s-1 no longer accepts order changes"}).encode()
    responses.append(_http_error(409, body))
    with pytest.raises(SyncConflictError) as ei:
        HttpLedgerClient("http://ledger").apply_order_mutation("local-1", {})
    assert str(ei.value) == "Shift is closed: shift s-1 no longer accepts order changes"
    assert ei.value.kind == "conflict"


def test_unreachable_ledger_is_retryable(captured):
    _calls, responses = captured
    responses.append(URLError("connection refused"))
    with pytest.raises(RetryableSyncError) as ei:
        HttpLedgerClient("http://ledger").apply_order_mutation("local-1", {})
    assert "unreachable" in str(ei.value)


def test_non_json_response_is_retryable(captured):
    _calls, responses = captured
    responses.append(b"<html>proxy error</html>")
    with pytest.raises(RetryableSyncError):
        HttpLedgerClient("http://ledger").apply_order_mutation("local-1", {})


def test_health_and_catalog_reads(captured):
    calls, responses = captured
    responses.extend(
        [
            json.dumps({"ok": True}).encode(),
            URLError("down"),
            json.dumps({"categories": [{"id": "c-1", "name": "Minuman"}]}).encode(),
            json.dumps({"menus": [{"id": "m-1"}]}).encode(),
        ]
    )
    client = HttpLedgerClient("http://ledger")
    assert client.health() is True
    assert client.health() is False
    assert client.fetch_categories() == [{"id": "c-1", "name": "Minuman"}]
    assert client.fetch_menus() == [{"id": "m-1"}]
    assert calls[0]["timeout"] == 1.0
    assert calls[2]["req"].full_url == "http://ledger/category"
