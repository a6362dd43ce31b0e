from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from ..config import REDIS_URL


def build_redis(url: Optional[str] = None) -> Optional[redis.Redis]:
    """
    Shared async Redis client (it pools connections internally), or None
    when no Redis is configured and the SQL store has to do the locking.
    """
    url = url if url is not None else REDIS_URL
    if not url:
        return None
    return redis.from_url(url, encoding="utf-8", decode_responses=True)
