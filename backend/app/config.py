import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/warung_pos')
        # Comma-separated list of allowed CORS origins for the cashier UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.db_pool_min_size = self._int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max_size = self._int("DB_POOL_MAX_SIZE", 10)
        self.session_days = self._int("SESSION_DAYS", 7)
        # Order statuses that count as resolved when closing a shift.
        self.shift_close_terminal_statuses = [
            s.upper()
            for s in self._split_csv(os.getenv("SHIFT_CLOSE_TERMINAL_STATUSES", "").strip(), default=["COMPLETED"])
        ]

settings = Settings()
