from __future__ import annotations
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ..config import LEADERBOARD_TTL_SECONDS


# ---- keys
K_LEADERBOARD = "cache:leaderboard"
K_STATS = "cache:voting_stats"


async def get_cached(r: redis.Redis, key: str) -> Optional[Dict[str, Any]]:
    raw = await r.get(key)
    return json.loads(raw) if raw else None


async def set_cached(r: redis.Redis, key: str, value: Dict[str, Any],
                     ttl_seconds: int = LEADERBOARD_TTL_SECONDS) -> None:
    await r.set(key, json.dumps(value), ex=ttl_seconds)


async def get_leaderboard(r: redis.Redis) -> Optional[Dict[str, Any]]:
    return await get_cached(r, K_LEADERBOARD)


async def set_leaderboard(r: redis.Redis, value: Dict[str, Any]) -> None:
    await set_cached(r, K_LEADERBOARD, value)


async def invalidate_leaderboard(r: redis.Redis) -> None:
    # stats carry the top artist, so they go stale together
    await r.delete(K_LEADERBOARD, K_STATS)
