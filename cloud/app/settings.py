from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ["REDIS_URL"]
CANCEL_TTL_SECONDS = int(os.environ.get("CANCEL_TTL_SECONDS", "86400"))
SUPERSEDE_RUNS = os.environ.get("SUPERSEDE_RUNS", "true").lower() in ("1", "true", "yes")
