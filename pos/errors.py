class StorageError(Exception):
    """Local Store misuse or lifecycle fault (e.g. operating on a closed store).

    Raw sqlite3 errors are *not* wrapped; they propagate unchanged.
    """


class SyncError(Exception):
    kind = "sync"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableSyncError(SyncError):
    # Network down, timeout, 5xx: try again on a later pass.
    kind = "retryable"


class SyncConflictError(SyncError):
    # The ledger rejected the payload or holds a diverging version.
    kind = "conflict"


class SyncFailedError(SyncError):
    # Nothing the ledger can fix (unknown entity tag, record vanished locally).
    kind = "failed"
