import redis.asyncio as redis
from lastmile.config import settings

_redis: redis.Redis | None = None

DELIVERED_KEY_PREFIX = "courier_callback:delivered:"


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def was_delivered(r: redis.Redis, event_id: str) -> bool:
    """True if a callback for this outbox event already reached the courier system."""
    return bool(await r.exists(f"{DELIVERED_KEY_PREFIX}{event_id}"))


async def mark_delivered(r: redis.Redis, event_id: str, ttl_seconds: int = 7 * 86400) -> None:
    """
    Remember a delivered event so a re-published outbox row (relay crashed between
    push and mark-published) does not call the courier twice.
    """
    await r.set(f"{DELIVERED_KEY_PREFIX}{event_id}", "1", ex=ttl_seconds)
