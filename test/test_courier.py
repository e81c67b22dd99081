import random
from datetime import datetime, timezone

import httpx
from _helper import CALLBACK_URL, SECRET, Recorder, make_order

from lastmile.courier import (
    CourierNotifier,
    RetryPolicy,
    build_callback_payload,
    canonical_json,
    generate_auth_header,
    validate_callback_auth,
)
from lastmile.models import CourierCallbackEvent

CHANGED_AT = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


def _payload():
    return build_callback_payload(make_order(1), "Out for Delivery", CHANGED_AT)


def test_payload_has_exact_keys():
    payload = _payload()
    assert set(payload) == {"order_id", "status", "timestamp", "customer_name", "phone"}
    assert payload["order_id"] == "ORD-001"
    assert payload["timestamp"] == "2024-05-01T09:30:00.000Z"


def test_auth_header_round_trip():
    payload = _payload()
    header = generate_auth_header(payload, SECRET)
    assert header.startswith("HMAC ")
    assert len(header) == len("HMAC ") + 64
    assert validate_callback_auth(header, payload, SECRET)


def test_tampered_payload_fails_validation():
    payload = _payload()
    header = generate_auth_header(payload, SECRET)
    for key in payload:
        tampered = dict(payload)
        value = tampered[key]
        tampered[key] = value[:-1] + chr(ord(value[-1]) ^ 1)
        assert not validate_callback_auth(header, tampered, SECRET)


def test_wrong_secret_or_malformed_header_fails():
    payload = _payload()
    header = generate_auth_header(payload, SECRET)
    assert not validate_callback_auth(header, payload, "other-secret")
    assert not validate_callback_auth(None, payload, SECRET)
    assert not validate_callback_auth("Bearer abc", payload, SECRET)
    assert not validate_callback_auth("HMAC not-hex-ü", payload, SECRET)


def test_canonical_json_ignores_key_order():
    payload = _payload()
    assert canonical_json(payload) == canonical_json(dict(reversed(list(payload.items()))))


async def test_notify_sends_signed_payload():
    recorder = Recorder()
    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=recorder.client())

    result = await notifier.notify(make_order(1), "Delivered", timestamp=CHANGED_AT)

    assert result.success
    assert result.order_id == "ORD-001"
    assert result.status == "Delivered"
    request = recorder.requests[0]
    assert str(request.url) == CALLBACK_URL
    assert request.headers["Content-Type"] == "application/json"
    body = recorder.bodies()[0]
    assert body["status"] == "Delivered"
    assert validate_callback_auth(request.headers["Authorization"], body, SECRET)

    attempt = notifier.attempts[-1]
    assert attempt.success and attempt.order_id == "ORD-001" and attempt.status == "Delivered"


async def test_notify_accepts_outbox_event():
    recorder = Recorder()
    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=recorder.client())
    event = CourierCallbackEvent.for_order(make_order(3), "Rescheduled", occurred_at=CHANGED_AT)

    result = await notifier.notify(event, event.status, timestamp=event.occurred_at)

    assert result.success
    assert recorder.bodies()[0]["order_id"] == "ORD-003"


async def test_http_error_is_returned_not_raised():
    recorder = Recorder(httpx.Response(503, text="maintenance"))
    sunk = []

    async def sink(attempt):
        sunk.append(attempt)

    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=recorder.client(), attempt_sink=sink)
    result = await notifier.notify(make_order(1), "Delivered")

    assert not result.success
    assert result.status_code == 503
    assert "503" in result.error
    assert sunk[0].success is False
    assert "error" in sunk[0].response


async def test_network_error_is_returned_not_raised():
    recorder = Recorder(httpx.ConnectError("connection refused"))
    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=recorder.client())

    result = await notifier.notify(make_order(1), "Delivered", attempt=3)

    assert not result.success
    assert result.status_code is None
    assert notifier.attempts[-1].attempt == 3


async def test_failing_attempt_sink_does_not_fail_notify():
    async def sink(attempt):
        raise RuntimeError("db down")

    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=Recorder().client(), attempt_sink=sink)
    result = await notifier.notify(make_order(1), "Delivered")
    assert result.success


def test_retry_policy_backoff_doubles_and_caps():
    policy = RetryPolicy(max_attempts=5, base_delay_sec=1.0, max_delay_sec=10.0, jitter_ratio=0.0)
    assert [policy.delay_for(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert policy.should_retry(4)
    assert not policy.should_retry(5)


def test_retry_policy_jitter_is_bounded():
    policy = RetryPolicy(base_delay_sec=2.0, jitter_ratio=0.5)
    rng = random.Random(7)
    for _ in range(50):
        delay = policy.delay_for(1, rng)
        assert 4.0 <= delay <= 6.0
