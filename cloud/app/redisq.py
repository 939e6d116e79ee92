from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, CANCEL_TTL_SECONDS

r = redis.from_url(REDIS_URL, decode_responses=True)

def cancel_key(run_id: str) -> str:
    return f"pipewave:cancel:{run_id}"

async def request_cancel(run_id: str) -> None:
    # flag expires so abandoned runs don't pile up keys
    await r.set(cancel_key(run_id), "1", ex=CANCEL_TTL_SECONDS)

async def is_cancelled(run_id: str) -> bool:
    return bool(await r.exists(cancel_key(run_id)))
