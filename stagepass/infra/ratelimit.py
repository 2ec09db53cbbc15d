import time

import redis.asyncio as redis


def k_bucket(key: str) -> str: return f"rl:{key}"


async def token_bucket(r: redis.Redis, key: str, capacity: int,
                       refill_per_sec: float) -> bool:
    now = time.time()
    bucket_key = k_bucket(key)

    data = await r.hgetall(bucket_key)
    tokens = float(data.get("tokens", capacity))
    last = float(data.get("last", now))

    tokens = min(capacity, tokens + (now - last) * refill_per_sec)
    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    pipe = r.pipeline(transaction=True)
    pipe.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    pipe.expire(bucket_key, 3600)
    await pipe.execute()
    return allowed
