"""
Outgoing webhook dispatcher

trigger() records one pending delivery per matching subscription and hands it to the
worker queue; it never raises into the business operation that raised the event.
process_delivery() runs in the worker and performs one attempt:

    pending | failed -> delivering -> success | failed | exhausted

max_retries is the total number of attempts. Attempt k < max_retries that fails is
rescheduled after retry_delay_seconds * k; a failing attempt max_retries is terminal.
Every attempt resends the same body and event_id, so delivery is at-least-once and
subscribers de-duplicate on X-Webhook-Event-ID.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from ...config import (
    WEBHOOK_DEFAULT_MAX_RETRIES,
    WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS,
    WEBHOOK_TIMEOUT_SECONDS,
    WEBHOOK_USER_AGENT,
)
from ...models_webhooks import WebhookLog, WebhookSubscription
from ...webhook_security import SIGNATURE_HEADER, sign_payload
from .events import WebhookEventType, build_event_payload, serialize_payload
from .repository import WebhookRepository

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY_CHARS = 10_000
MAX_FAILURE_REASON_CHARS = 500


class DeliveryQueue(Protocol):
    async def enqueue(self, record_id: int, defer_seconds: float = 0) -> None: ...


@dataclass
class DeliveryAttempt:
    success: bool
    duration_ms: int
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None

    @property
    def failure_reason(self) -> str:
        if self.error:
            return self.error
        return f"HTTP {self.status_code}: {(self.response_body or '')[:MAX_FAILURE_REASON_CHARS]}"


_MISSING = object()


def _lookup(data: Any, dotted_key: str) -> Any:
    value = data
    for part in dotted_key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def matches_filters(data: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    """
    Every filter must match. Keys may be dotted ("client.type"); a list value means
    "one of" ({"status": ["completed", "invoiced"]}).
    """
    for key, expected in (filters or {}).items():
        actual = _lookup(data, key)
        if isinstance(expected, list):
            if actual is _MISSING or actual not in expected:
                return False
        elif actual is _MISSING or actual != expected:
            return False
    return True


def max_attempts(subscription: WebhookSubscription) -> int:
    """Total attempts; an explicit 0 still gets the first delivery but no retries"""
    configured = subscription.max_retries
    return max(1, WEBHOOK_DEFAULT_MAX_RETRIES if configured is None else configured)


def retry_delay(subscription: WebhookSubscription, attempt: int) -> int:
    configured = subscription.retry_delay_seconds
    return (WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS if configured is None else configured) * attempt


class WebhookDispatcher:
    """Records, delivers and retries outgoing webhooks"""

    def __init__(
        self,
        db: Session,
        queue: Optional[DeliveryQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.queue = queue
        self.transport = transport
        self.timeout = timeout
        self.repo = WebhookRepository()

    # ============================================================================
    # TRIGGER (request path)
    # ============================================================================

    async def trigger(
        self,
        organization_id: int,
        event_type: WebhookEventType,
        data: dict[str, Any],
        resource_id: Optional[str] = None,
    ) -> list[int]:
        """
        Record a pending delivery for every active, matching subscription and enqueue them.

        Returns the delivery record ids. Never raises: webhook problems must not fail the
        business operation.
        """
        try:
            subscriptions = [
                sub
                for sub in self.repo.get_active_subscriptions(self.db, organization_id, event_type.value)
                if matches_filters(data, sub.filters)
            ]
            if not subscriptions:
                return []

            payload = build_event_payload(event_type, organization_id, data, resource_id=resource_id)
            records = [self._record(sub, payload) for sub in subscriptions]
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to record webhooks for {event_type.value} (org {organization_id}): {e}")
            return []

        record_ids = [record.id for record in records]
        logger.info(f"🪝 {event_type.value}: {len(record_ids)} webhook deliveries queued for org {organization_id}")
        await self._enqueue_all(record_ids)
        return record_ids

    async def trigger_subscription(self, subscription: WebhookSubscription, data: dict[str, Any]) -> WebhookLog:
        """Queue an event for a single subscription regardless of its filters (test deliveries)"""
        payload = build_event_payload(WebhookEventType(subscription.event_type), subscription.organization_id, data)
        record = self._record(subscription, payload)
        self.db.commit()
        await self._enqueue_all([record.id])
        return record

    def _record(self, subscription: WebhookSubscription, payload: dict[str, Any]) -> WebhookLog:
        record = self.repo.create_delivery(
            self.db,
            subscription,
            event_type=payload["event"],
            event_id=payload["event_id"],
            request_body=serialize_payload(payload),
            request_headers={
                "Content-Type": "application/json",
                "User-Agent": WEBHOOK_USER_AGENT,
                "X-Webhook-Event": payload["event"],
                "X-Webhook-Event-ID": payload["event_id"],
                "X-Webhook-Timestamp": payload["timestamp"],
            },
        )
        self.db.flush()
        return record

    async def _enqueue_all(self, record_ids: list[int]) -> None:
        if self.queue is None:
            logger.warning(f"⚠️ No webhook queue configured, {len(record_ids)} deliveries left for the requeue cron")
            return
        for record_id in record_ids:
            try:
                await self.queue.enqueue(record_id)
            except Exception as e:
                # Record stays pending; requeue_stalled picks it up
                logger.warning(f"⚠️ Could not enqueue webhook delivery {record_id}: {e}")

    # ============================================================================
    # DELIVERY (worker)
    # ============================================================================

    def _headers(self, subscription: WebhookSubscription, record: WebhookLog) -> dict[str, str]:
        headers = dict(record.request_headers or {})
        headers.update({str(k): str(v) for k, v in (subscription.headers or {}).items()})
        signature = sign_payload(subscription.secret_key, record.request_body.encode("utf-8"))
        if signature:
            headers[SIGNATURE_HEADER] = signature
        return headers

    async def deliver(self, subscription: WebhookSubscription, record: WebhookLog) -> DeliveryAttempt:
        """One HTTP POST of the stored body. Network errors and timeouts are failed attempts."""
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = await client.post(
                    record.target_url,
                    content=record.request_body.encode("utf-8"),
                    headers=self._headers(subscription, record),
                )
        except httpx.TimeoutException:
            return DeliveryAttempt(
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=f"Timed out after {self.timeout:g}s",
            )
        except httpx.HTTPError as e:
            return DeliveryAttempt(
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=f"{type(e).__name__}: {e}",
            )

        return DeliveryAttempt(
            success=response.is_success,
            duration_ms=int((time.monotonic() - started) * 1000),
            status_code=response.status_code,
            response_body=response.text[:MAX_RESPONSE_BODY_CHARS],
        )

    async def process_delivery(self, record_id: int) -> Optional[WebhookLog]:
        """Run one attempt for a delivery record and schedule the next one if needed"""
        if not self.repo.claim_delivery(self.db, record_id):
            logger.info(f"⏭️ Webhook delivery {record_id} is not pending, skipping")
            return None

        record = self.repo.get_delivery(self.db, record_id)
        self.db.refresh(record)
        subscription = record.subscription
        attempt_number = record.attempt_count

        attempt = await self.deliver(subscription, record)
        now = datetime.utcnow()

        record.status_code = attempt.status_code
        record.response_body = attempt.response_body if attempt.error is None else attempt.error
        record.delivery_duration_ms = attempt.duration_ms

        if attempt.success:
            record.status = "success"
            record.delivered_at = now
            record.next_retry_at = None
            subscription.trigger_count = (subscription.trigger_count or 0) + 1
            subscription.last_triggered_at = now
            self.db.commit()
            logger.info(
                f"✅ Webhook {record.event_type} delivered to subscription {subscription.subscription_id} "
                f"(attempt {attempt_number}, {attempt.status_code}, {attempt.duration_ms}ms)"
            )
            return record

        if attempt_number >= max_attempts(subscription):
            record.status = "exhausted"
            record.next_retry_at = None
            subscription.failure_count = (subscription.failure_count or 0) + 1
            subscription.last_failure_at = now
            subscription.last_failure_reason = attempt.failure_reason[:MAX_FAILURE_REASON_CHARS]
            self.db.commit()
            logger.error(
                f"❌ Webhook {record.event_type} to subscription {subscription.subscription_id} exhausted "
                f"after {attempt_number} attempts: {attempt.failure_reason[:200]}"
            )
            return record

        delay = retry_delay(subscription, attempt_number)
        record.status = "failed"
        record.next_retry_at = now + timedelta(seconds=delay)
        self.db.commit()
        logger.warning(
            f"⚠️ Webhook {record.event_type} to subscription {subscription.subscription_id} failed "
            f"(attempt {attempt_number}/{max_attempts(subscription)}), retrying in {delay}s: "
            f"{attempt.failure_reason[:200]}"
        )

        if self.queue is not None:
            try:
                await self.queue.enqueue(record.id, defer_seconds=delay)
            except Exception as e:
                logger.warning(f"⚠️ Could not schedule retry for webhook delivery {record.id}: {e}")
        return record

    async def requeue_stalled(
        self,
        pending_grace: timedelta = timedelta(minutes=2),
        delivering_timeout: timedelta = timedelta(minutes=10),
    ) -> int:
        """Re-enqueue deliveries whose queued job was lost. Returns how many were requeued."""
        now = datetime.utcnow()
        stalled = self.repo.get_stalled_deliveries(self.db, now, pending_grace, delivering_timeout)

        requeue_ids = []
        for record in stalled:
            if record.status == "delivering":
                # The attempt was counted when claimed
                if record.attempt_count >= max_attempts(record.subscription):
                    record.status = "exhausted"
                    subscription = record.subscription
                    subscription.failure_count = (subscription.failure_count or 0) + 1
                    subscription.last_failure_at = now
                    subscription.last_failure_reason = "Delivery attempt did not complete"
                    continue
                record.status = "failed"
            requeue_ids.append(record.id)
        self.db.commit()

        if requeue_ids:
            logger.info(f"🔁 Requeueing {len(requeue_ids)} stalled webhook deliveries")
            await self._enqueue_all(requeue_ids)
        return len(requeue_ids)