import time
from typing import Optional

BUCKET_TTL_SECONDS = 3600


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float, now: Optional[float] = None) -> bool:
    """Take one token from the bucket stored at rl:<key>.

    Returns False (and takes nothing) once the bucket is empty. Not atomic
    across clients; a burst may slip a request or two past the limit.
    """
    now = time.time() if now is None else now
    bucket_key = f"rl:{key}"

    state = await redis.hgetall(bucket_key)
    last = float(state.get("last", now))
    available = min(capacity, float(state.get("tokens", capacity)) + max(0.0, now - last) * refill_per_sec)

    allowed = available >= 1.0
    if allowed:
        available -= 1.0

    await redis.hset(bucket_key, mapping={"tokens": available, "last": now})
    await redis.expire(bucket_key, BUCKET_TTL_SECONDS)
    return allowed
