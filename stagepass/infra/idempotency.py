import json
from typing import Optional

import redis.asyncio as redis


def k_idem(scope: str, key: str) -> str: return f"idem:{scope}:{key}"


async def get_cached_response(r: redis.Redis, scope: str,
                              key: str) -> Optional[dict]:
    raw = await r.get(k_idem(scope, key))
    return json.loads(raw) if raw else None


async def set_cached_response(r: redis.Redis, scope: str, key: str,
                              response: dict, ttl_seconds: int = 300) -> None:
    await r.setex(k_idem(scope, key), ttl_seconds, json.dumps(response))
