# Ensure 'backend/' is on sys.path so 'import app.*' works
# even when pytest rootdir is the repository root.
import os
from pathlib import Path
import sys

_BACKEND_ROOT = Path(__file__).resolve().parent  # <repo>/backend
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# Settings are read at import time; pin a throwaway database and skip backend/.env.
os.environ.setdefault("CI", "1")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
