"""Redis-backed replay of responses and the outstanding-payment lock."""
import hashlib
import json
from typing import Optional

RESPONSE_TTL_SECONDS = 300


def _response_key(scope: str, idem_key: str, fingerprint: tuple) -> str:
    # a key only replays for the same caller and the same request content
    digest = hashlib.sha256(json.dumps([idem_key, *fingerprint]).encode()).hexdigest()
    return f"idem:{scope}:{digest}"


async def get_cached_response(redis, scope: str, idem_key: Optional[str], *fingerprint) -> Optional[dict]:
    if not idem_key:
        return None
    raw = await redis.get(_response_key(scope, idem_key, fingerprint))
    return json.loads(raw) if raw else None


async def cache_response(redis, scope: str, idem_key: Optional[str], response: dict, *fingerprint) -> dict:
    if idem_key:
        await redis.setex(_response_key(scope, idem_key, fingerprint), RESPONSE_TTL_SECONDS, json.dumps(response))
    return response


async def acquire_payment_lock(redis, booking_id: str, ttl_seconds: int) -> bool:
    # held for as long as the payer's phone prompt may still be open
    return bool(await redis.set(f"paylock:{booking_id}", "1", nx=True, ex=ttl_seconds))


async def release_payment_lock(redis, booking_id: str) -> None:
    await redis.delete(f"paylock:{booking_id}")
