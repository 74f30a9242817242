import os
import sys


# Tests import both `backend.app.*` (API server) and `pos.*` (terminal agent),
# so the repo root must be importable whether pytest runs from the root or `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# The app reads settings at import time; keep tests off any real database.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/warung_pos_test")
