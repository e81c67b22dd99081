"""
Courier system callbacks: HMAC-signed status updates, attempt logging and the
retry policy used by the worker.

The signature covers the exact bytes that are sent. The receiver recomputes the
HMAC over the same canonical JSON and compares in constant time.
"""
import hashlib
import hmac
import json
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from lastmile.errors import CallbackDeliveryError
from lastmile.metrics import courier_callbacks_total
from lastmile.models import CallbackAttempt, NotifyResult, utcnow

logger = logging.getLogger(__name__)

AUTH_SCHEME = "HMAC "
ATTEMPT_LOG_SIZE = 1000

AttemptSink = Callable[[CallbackAttempt], Awaitable[None]]


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_callback_payload(order, status: str, timestamp: datetime | None = None) -> dict[str, str]:
    """order is anything carrying order_code, customer_name and phone (Order or CourierCallbackEvent)."""
    return {
        "order_id": order.order_code,
        "status": status,
        "timestamp": format_timestamp(timestamp or utcnow()),
        "customer_name": order.customer_name,
        "phone": order.phone,
    }


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def _signature(payload: dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()


def generate_auth_header(payload: dict[str, Any], secret: str) -> str:
    return f"{AUTH_SCHEME}{_signature(payload, secret)}"


def validate_callback_auth(auth_header: str | None, payload: dict[str, Any], secret: str) -> bool:
    """Receiver side check. Missing or malformed headers are rejected, never raised."""
    if not auth_header or not auth_header.startswith(AUTH_SCHEME):
        return False
    provided = auth_header[len(AUTH_SCHEME):].strip()
    try:
        expected = _signature(payload, secret)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(provided.encode("ascii", "replace"), expected.encode("ascii"))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""
    max_attempts: int = 5
    base_delay_sec: float = 1.0
    max_delay_sec: float = 900.0
    jitter_ratio: float = 0.2

    def should_retry(self, attempts: int) -> bool:
        """attempts = number of failed attempts so far."""
        return attempts < self.max_attempts

    def delay_for(self, attempts: int, rng: random.Random | None = None) -> float:
        delay = min(self.max_delay_sec, self.base_delay_sec * (2 ** attempts))
        jitter = (rng or random).uniform(0, delay * self.jitter_ratio)
        return delay + jitter

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.callback_max_attempts,
            base_delay_sec=settings.callback_base_delay_sec,
            max_delay_sec=settings.callback_max_delay_sec,
            jitter_ratio=settings.callback_jitter_ratio,
        )


class CourierNotifier:
    def __init__(
        self,
        callback_url: str,
        secret: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        attempt_sink: AttemptSink | None = None,
    ):
        self.callback_url = callback_url
        self.secret = secret
        self.timeout = timeout
        self._client = client
        self._attempt_sink = attempt_sink
        self.attempts: deque[CallbackAttempt] = deque(maxlen=ATTEMPT_LOG_SIZE)

    async def _post(self, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.callback_url, content=body, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.callback_url, content=body, headers=headers)

    async def _send(self, order_code: str, status: str, payload: dict[str, str]) -> httpx.Response:
        try:
            headers = {
                "Authorization": generate_auth_header(payload, self.secret),
                "Content-Type": "application/json",
            }
            response = await self._post(canonical_json(payload), headers)
        except httpx.HTTPError as e:
            raise CallbackDeliveryError(order_code, status, f"{type(e).__name__}: {e}") from e
        except (TypeError, ValueError) as e:
            raise CallbackDeliveryError(order_code, status, f"signing failed: {e}") from e
        if response.is_error:
            raise CallbackDeliveryError(
                order_code, status, f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    async def notify(
        self,
        order,
        status: str,
        timestamp: datetime | None = None,
        attempt: int = 1,
    ) -> NotifyResult:
        """
        Send one signed callback. Failures come back as a result with success=False;
        nothing is raised, so a courier outage never blocks the local status change.
        """
        order_code = order.order_code
        payload = build_callback_payload(order, status, timestamp)
        try:
            response = await self._send(order_code, status, payload)
        except CallbackDeliveryError as e:
            logger.warning("Courier callback failed (attempt %d): %s", attempt, e)
            courier_callbacks_total.labels(outcome="failed").inc()
            await self._log_attempt(order_code, status, False, {"error": str(e)}, attempt)
            return NotifyResult(
                success=False,
                message="Callback failed",
                order_id=order_code,
                status=status,
                status_code=e.status_code,
                error=str(e),
            )

        logger.info("Courier callback sent order=%s status=%s", order_code, status)
        courier_callbacks_total.labels(outcome="sent").inc()
        await self._log_attempt(order_code, status, True, response.text, attempt)
        return NotifyResult(
            success=True,
            message="Callback sent successfully",
            order_id=order_code,
            status=status,
            status_code=response.status_code,
        )

    async def _log_attempt(self, order_code: str, status: str, success: bool, response: Any, attempt: int) -> None:
        entry = CallbackAttempt(
            order_id=order_code,
            status=status,
            success=success,
            timestamp=utcnow(),
            response=response,
            attempt=attempt,
        )
        self.attempts.append(entry)
        logger.debug("Courier callback log: %s", entry.model_dump(mode="json"))
        if self._attempt_sink is not None:
            try:
                await self._attempt_sink(entry)
            except Exception:
                logger.exception("Failed to persist courier callback attempt for %s", order_code)
