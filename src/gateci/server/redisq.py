from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, QUEUE_NAME

r = redis.from_url(REDIS_URL, decode_responses=True)

async def enqueue_run(run_id: str) -> None:
    await r.rpush(QUEUE_NAME, run_id)  # FIFO: push right

async def dequeue_run(timeout_s: int = 5) -> str | None:
    item = await r.blpop(QUEUE_NAME, timeout=timeout_s)  # FIFO: pop left
    if not item:
        return None
    _q, run_id = item
    return run_id
