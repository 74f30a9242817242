import json
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import RetryableSyncError, SyncConflictError

# Statuses worth retrying as-is: the payload was never judged.
RETRYABLE_HTTP_STATUS = {401, 403, 408, 425, 429}


def _error_detail(ex: HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")
    except Exception:
        body = ""
    msg = f"http {getattr(ex, 'code', None)} {getattr(ex, 'reason', '')}".strip()
    if body:
        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("detail"):
            details = parsed.get("details")
            return f"{parsed['detail']}: {details}" if details else str(parsed["detail"])
        msg = f"{msg}: {body[:1000]}"
    return msg


class HttpLedgerClient:
    """Terminal-side view of the authoritative ledger, over the API server."""

    def __init__(self, base_url: str, token: str = "", timeout_s: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token or ""
        self.timeout_s = float(timeout_s or 10.0)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, payload: Optional[dict] = None, timeout_s: Optional[float] = None) -> dict:
        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        req = Request(f"{self.base_url}{path}", data=data, headers=self._headers(), method=method)
        try:
            with urlopen(req, timeout=timeout_s or self.timeout_s) as resp:
                body = resp.read().decode("utf-8") if resp else ""
        except HTTPError as ex:
            detail = _error_detail(ex)
            if ex.code >= 500 or ex.code in RETRYABLE_HTTP_STATUS:
                raise RetryableSyncError(detail, status_code=ex.code) from ex
            raise SyncConflictError(detail, status_code=ex.code) from ex
        except (URLError, OSError) as ex:
            # Connection refused, DNS, timeout: the terminal is offline.
            reason = getattr(ex, "reason", None) or ex
            raise RetryableSyncError(f"ledger unreachable: {reason}") from ex
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as ex:
            raise RetryableSyncError("ledger returned a non-JSON response") from ex

    def apply_order_mutation(self, local_id: str, payload: dict) -> dict:
        return self._request("POST", "/sync/orders", {"local_id": local_id, "order": payload})

    def fetch_categories(self) -> list:
        return list(self._request("GET", "/category").get("categories") or [])

    def fetch_menus(self) -> list:
        return list(self._request("GET", "/menu").get("menus") or [])

    def health(self, timeout_s: float = 1.0) -> bool:
        try:
            res = self._request("GET", "/health", timeout_s=timeout_s)
        except (RetryableSyncError, SyncConflictError):
            return False
        return bool(res.get("ok"))
