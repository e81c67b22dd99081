"""
Courier callback queue. Backend: Redis (LPUSH/BLMOVE into a processing list, delayed
retries in a sorted set) or AWS SQS when SQS_QUEUE_URL is set.
A popped Redis message stays in the processing list until its outcome is recorded.
"""
import json
import time

import redis.asyncio as redis

from lastmile.config import settings
from lastmile.models import CourierCallbackEvent
from lastmile.redis_client import get_redis
from lastmile.sqs_client import send_message

CALLBACK_QUEUE_KEY = "queue:courier_callbacks"
CALLBACK_DELAYED_KEY = "queue:courier_callbacks:delayed"
CALLBACK_DLQ_KEY = "queue:courier_callbacks:dlq"
CALLBACK_PROCESSING_KEY = "queue:courier_callbacks:processing"


def make_body(event: CourierCallbackEvent) -> dict:
    return event.model_dump(mode="json")


async def push_to_queue(event: CourierCallbackEvent) -> None:
    body = make_body(event)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(CALLBACK_QUEUE_KEY, json.dumps(body))


async def schedule_retry(r: redis.Redis, event: CourierCallbackEvent, delay_sec: float) -> None:
    """Park the event in the delayed set until its backoff expires. Survives worker restarts."""
    await r.zadd(CALLBACK_DELAYED_KEY, {json.dumps(make_body(event)): time.time() + delay_sec})


async def promote_due_retries(r: redis.Redis, now: float | None = None, limit: int = 100) -> int:
    """Move retries whose backoff has expired back onto the main queue."""
    due = await r.zrangebyscore(CALLBACK_DELAYED_KEY, 0, now or time.time(), start=0, num=limit)
    promoted = 0
    for member in due:
        # zrem decides the winner when several workers promote at once
        if await r.zrem(CALLBACK_DELAYED_KEY, member):
            await r.lpush(CALLBACK_QUEUE_KEY, member)
            promoted += 1
    return promoted


async def move_to_dlq(r: redis.Redis, event: CourierCallbackEvent, last_error: str) -> None:
    await r.lpush(CALLBACK_DLQ_KEY, json.dumps({
        **make_body(event),
        "last_error": last_error,
        "failed_at": time.time(),
    }))


async def replay_redis_dlq(r: redis.Redis, limit: int = 100) -> int:
    """Re-queue dead-lettered callbacks with a fresh attempt budget."""
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(CALLBACK_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            event = CourierCallbackEvent.model_validate_json(raw)
        except ValueError:
            continue
        event.attempts = 0
        await r.lpush(CALLBACK_QUEUE_KEY, event.model_dump_json())
    return replayed


async def pop_for_processing(r: redis.Redis, timeout: int) -> str | None:
    """Block until a callback is available and move it to the processing list."""
    return await r.blmove(CALLBACK_QUEUE_KEY, CALLBACK_PROCESSING_KEY, timeout, "RIGHT", "LEFT")


async def ack_processing(r: redis.Redis, raw: str) -> None:
    """The message's outcome (delivered, retry scheduled, dead-lettered) is recorded."""
    await r.lrem(CALLBACK_PROCESSING_KEY, 1, raw)


async def requeue_processing(r: redis.Redis, raw: str) -> None:
    await r.lpush(CALLBACK_QUEUE_KEY, raw)
    await r.lrem(CALLBACK_PROCESSING_KEY, 1, raw)


async def recover_processing(r: redis.Redis) -> int:
    """
    Return messages left in the processing list by a crashed or cancelled worker
    to the main queue. Already-delivered ones are skipped later by the dedupe key.
    """
    recovered = 0
    while await r.lmove(CALLBACK_PROCESSING_KEY, CALLBACK_QUEUE_KEY, "RIGHT", "LEFT") is not None:
        recovered += 1
    return recovered
