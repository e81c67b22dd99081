"""
Worker: relay the courier outbox onto the callback queue, deliver signed callbacks.
- Redis: a popped message sits in a processing list until its outcome is recorded;
  on an error it returns to the main queue. Failed callbacks wait in a delayed
  sorted set (exponential backoff + jitter), then return to the main queue; after
  max attempts they go to the DLQ.
- Delivered event ids are remembered in Redis, so a callback is sent once even if
  its outbox row is relayed twice.
- SQS: failed messages are hidden for the backoff period; after max attempts they go to the DLQ.
- Exhausted callbacks are also written to courier_dead_letters for manual reconciliation.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM. Pending retries stay in Redis/SQS.
Run: python -m lastmile.worker
"""
import asyncio
import functools
import logging
import signal
import sys
import threading
from collections.abc import Awaitable, Callable

import redis.asyncio as redis
from pydantic import ValidationError

from lastmile.config import settings
from lastmile.courier import CourierNotifier, RetryPolicy
from lastmile.db import PostgresOrderStore, close_pool, get_pool, init_schema
from lastmile.metrics import (
    callback_queue_messages_delayed,
    callback_queue_messages_waiting,
    courier_callbacks_dlq_total,
    courier_callbacks_retried_total,
)
from lastmile.models import CourierCallbackEvent, NotifyResult, new_id
from lastmile.queue import (
    CALLBACK_DELAYED_KEY,
    CALLBACK_QUEUE_KEY,
    ack_processing,
    move_to_dlq,
    pop_for_processing,
    promote_due_retries,
    push_to_queue,
    recover_processing,
    requeue_processing,
    schedule_retry,
)
from lastmile.redis_client import mark_delivered, was_delivered
from lastmile.sqs_client import delete_message, hide_for_backoff, receive_messages, send_message_to_dlq
from lastmile.store import OrderStore

logger = logging.getLogger(__name__)

BLMOVE_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090
PROMOTE_INTERVAL_SEC = 1.0
SQS_MAX_VISIBILITY_SEC = 43200


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def build_notifier(store: PostgresOrderStore | None = None) -> CourierNotifier:
    return CourierNotifier(
        callback_url=settings.courier_callback_url,
        secret=settings.callback_auth_token,
        timeout=settings.courier_timeout_sec,
        attempt_sink=store.insert_callback_attempt if store is not None else None,
    )


def parse_event(raw: str) -> CourierCallbackEvent | None:
    try:
        return CourierCallbackEvent.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Invalid callback message from queue: %s", e)
        return None


async def deliver(notifier: CourierNotifier, event: CourierCallbackEvent) -> NotifyResult:
    """One delivery attempt; the payload timestamp is the time of the status change."""
    return await notifier.notify(event, event.status, timestamp=event.occurred_at, attempt=event.attempts + 1)


async def dead_letter(store: OrderStore, event: CourierCallbackEvent, error: str) -> None:
    courier_callbacks_dlq_total.inc()
    logger.warning(
        "Moved callback event_id=%s (order %s, %s) to DLQ after %d attempts",
        event.event_id, event.order_code, event.status, event.attempts,
    )
    try:
        await store.record_dead_letter(event, error)
    except Exception:
        logger.exception("Failed to record dead letter for event_id=%s", event.event_id)


async def relay_outbox_once(
    store: OrderStore,
    push: Callable[[CourierCallbackEvent], Awaitable[None]] = push_to_queue,
    limit: int = 100,
) -> int:
    """
    Claim unpublished outbox records, push them onto the callback queue and mark
    them published. Records that were not pushed are released for the next pass.
    Returns how many were published.
    """
    relay_token = new_id()
    events = await store.claim_outbox(relay_token, limit)
    published: list[str] = []
    try:
        for event in events:
            await push(event)
            published.append(event.event_id)
    finally:
        await store.mark_outbox_published(published)
        await store.release_outbox_claim(relay_token)
    return len(published)


async def run_outbox_relay(store: OrderStore, shutdown_event: asyncio.Event) -> None:
    while not shutdown_event.is_set():
        try:
            published = await relay_outbox_once(store)
            if published:
                logger.info("Relayed %d outbox record(s) to the callback queue", published)
        except Exception:
            logger.exception("Outbox relay failed; retrying in %ss", settings.outbox_poll_interval_sec)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=settings.outbox_poll_interval_sec)
        except asyncio.TimeoutError:
            pass


async def _handle_redis_message(
    r: redis.Redis,
    notifier: CourierNotifier,
    store: OrderStore,
    raw: str,
    sem: asyncio.Semaphore,
    policy: RetryPolicy,
) -> None:
    event = parse_event(raw)
    if event is None:
        return
    if await was_delivered(r, event.event_id):
        logger.info("Duplicate callback event_id=%s, already delivered", event.event_id)
        return

    async with sem:
        result = await deliver(notifier, event)
    if result.success:
        await mark_delivered(r, event.event_id)
        return

    event.attempts += 1
    if policy.should_retry(event.attempts):
        delay = policy.delay_for(event.attempts - 1)
        logger.info(
            "Retrying callback event_id=%s in %.1fs (attempt %d/%d)",
            event.event_id, delay, event.attempts, policy.max_attempts,
        )
        courier_callbacks_retried_total.inc()
        await schedule_retry(r, event, delay)
    else:
        await move_to_dlq(r, event, result.error or result.message)
        await dead_letter(store, event, result.error or result.message)


async def process_one_redis(
    r: redis.Redis,
    notifier: CourierNotifier,
    store: OrderStore,
    raw: str,
    sem: asyncio.Semaphore,
    policy: RetryPolicy,
) -> None:
    """Handle one message from the processing list and acknowledge it once its outcome is recorded."""
    try:
        await _handle_redis_message(r, notifier, store, raw, sem, policy)
    except Exception:
        logger.exception("Callback handling failed; returning message to %s", CALLBACK_QUEUE_KEY)
        await requeue_processing(r, raw)
        return
    await ack_processing(r, raw)


async def process_one_sqs(
    r: redis.Redis,
    notifier: CourierNotifier,
    store: OrderStore,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
    policy: RetryPolicy,
) -> None:
    event = parse_event(body)
    if event is None:
        await delete_message(receipt_handle)
        return
    if await was_delivered(r, event.event_id):
        logger.info("Duplicate callback event_id=%s, already delivered", event.event_id)
        await delete_message(receipt_handle)
        return
    event.attempts = receive_count - 1

    async with sem:
        result = await deliver(notifier, event)
    if result.success:
        await mark_delivered(r, event.event_id)
        await delete_message(receipt_handle)
        return

    event.attempts = receive_count
    if policy.should_retry(event.attempts):
        # Don't delete: message reappears once the visibility timeout (backoff) expires
        backoff = min(int(policy.delay_for(event.attempts - 1)), SQS_MAX_VISIBILITY_SEC)
        courier_callbacks_retried_total.inc()
        await hide_for_backoff(receipt_handle, backoff)
    else:
        await send_message_to_dlq({**event.model_dump(mode="json"), "last_error": result.error})
        await dead_letter(store, event, result.error or result.message)
        await delete_message(receipt_handle)


async def run_retry_promoter(r: redis.Redis, shutdown_event: asyncio.Event) -> None:
    while not shutdown_event.is_set():
        try:
            promoted = await promote_due_retries(r)
            if promoted:
                logger.info("Promoted %d due retries to %s", promoted, CALLBACK_QUEUE_KEY)
            callback_queue_messages_waiting.set(await r.llen(CALLBACK_QUEUE_KEY))
            callback_queue_messages_delayed.set(await r.zcard(CALLBACK_DELAYED_KEY))
        except Exception:
            logger.exception("Retry promoter failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=PROMOTE_INTERVAL_SEC)
        except asyncio.TimeoutError:
            pass


def _on_task_done(tasks: set[asyncio.Task], task: asyncio.Task) -> None:
    tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Callback task failed", exc_info=task.exception())


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(store: PostgresOrderStore, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    policy = RetryPolicy.from_settings(settings)
    notifier = build_notifier(store)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_attempts=%d) ...",
        CALLBACK_QUEUE_KEY,
        settings.worker_concurrency,
        policy.max_attempts,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    recovered = await recover_processing(r)
    if recovered:
        logger.info("Returned %d unacknowledged message(s) to %s", recovered, CALLBACK_QUEUE_KEY)
    tasks: set[asyncio.Task] = set()
    background = [
        asyncio.create_task(run_outbox_relay(store, shutdown_event)),
        asyncio.create_task(run_retry_promoter(r, shutdown_event)),
    ]
    try:
        while not shutdown_event.is_set():
            raw = await pop_for_processing(r, BLMOVE_TIMEOUT)
            if raw is None:
                continue
            t = asyncio.create_task(process_one_redis(r, notifier, store, raw, sem, policy))
            tasks.add(t)
            t.add_done_callback(functools.partial(_on_task_done, tasks))
    finally:
        shutdown_event.set()
        await _drain(tasks)
        await asyncio.gather(*background, return_exceptions=True)
        await r.aclose()
        logger.info("Worker stopped.")


async def run_worker_sqs(store: PostgresOrderStore, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    policy = RetryPolicy.from_settings(settings)
    notifier = build_notifier(store)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d, max_attempts=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
        policy.max_attempts,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    relay = asyncio.create_task(run_outbox_relay(store, shutdown_event))
    try:
        while not shutdown_event.is_set():
            messages = await receive_messages(10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(r, notifier, store, body, receipt, receive_count, sem, policy))
                tasks.add(t)
                t.add_done_callback(functools.partial(_on_task_done, tasks))
    finally:
        shutdown_event.set()
        await _drain(tasks)
        await asyncio.gather(relay, return_exceptions=True)
        await r.aclose()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    store = PostgresOrderStore(pool)
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(store, shutdown_event)
        else:
            await run_worker_redis(store, shutdown_event)
    finally:
        await close_pool()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
