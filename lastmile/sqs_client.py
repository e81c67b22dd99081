"""
AWS SQS transport for courier callbacks. Used when SQS_QUEUE_URL is set.
boto3 is blocking, so every call runs in a worker thread.
"""
import asyncio
import json
from typing import Any

import boto3

from lastmile.config import settings
from lastmile.models import CourierCallbackEvent

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def _call(method: str, **kwargs) -> dict:
    return await asyncio.to_thread(getattr(_get_client(), method), **kwargs)


async def send_message(body: dict, queue_url: str | None = None) -> None:
    await _call("send_message", QueueUrl=queue_url or settings.sqs_queue_url, MessageBody=json.dumps(body))


async def send_message_to_dlq(body: dict) -> None:
    """No-op without SQS_DLQ_URL; the dead-letter row in Postgres is still written by the worker."""
    if settings.sqs_dlq_url:
        await send_message(body, queue_url=settings.sqs_dlq_url)


async def receive_messages(max_number: int = 10, wait_seconds: int = 5, queue_url: str | None = None) -> list[dict]:
    """Long-poll. Returns list of {ReceiptHandle, Body, Attributes.ApproximateReceiveCount}."""
    resp = await _call(
        "receive_message",
        QueueUrl=queue_url or settings.sqs_queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


async def delete_message(receipt_handle: str, queue_url: str | None = None) -> None:
    await _call("delete_message", QueueUrl=queue_url or settings.sqs_queue_url, ReceiptHandle=receipt_handle)


async def hide_for_backoff(receipt_handle: str, seconds: int) -> None:
    """Keep a failed callback on the queue but invisible until its backoff expires."""
    await _call(
        "change_message_visibility",
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=seconds,
    )


async def get_queue_depth() -> tuple[int, int]:
    """(waiting, in flight) for the callback queue; (0, 0) when SQS is not configured."""
    if not settings.sqs_queue_url:
        return 0, 0
    resp = await _call(
        "get_queue_attributes",
        QueueUrl=settings.sqs_queue_url,
        AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
    )
    attrs = resp.get("Attributes") or {}
    return (
        int(attrs.get("ApproximateNumberOfMessages", 0)),
        int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
    )


async def replay_sqs_dlq(limit: int = 100) -> int:
    """
    Move dead-lettered callbacks back to the main queue with a fresh attempt
    budget. Unparseable messages are dropped. Returns number of messages handled.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    handled = 0
    while handled < limit:
        messages = await receive_messages(min(10, limit - handled), 0, queue_url=settings.sqs_dlq_url)
        if not messages:
            break
        for msg in messages:
            try:
                event = CourierCallbackEvent.model_validate_json(msg.get("Body") or "{}")
            except ValueError:
                event = None
            if event is not None:
                event.attempts = 0
                await send_message(event.model_dump(mode="json"))
            await delete_message(msg.get("ReceiptHandle") or "", queue_url=settings.sqs_dlq_url)
            handled += 1
    return handled
