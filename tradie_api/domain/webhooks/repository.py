"""Webhook repository - Database operations for subscriptions and delivery records"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models_webhooks import WebhookLog, WebhookSubscription

RETRYABLE_STATUSES = ("pending", "failed")


class WebhookRepository:
    """Repository for webhook subscriptions and delivery logs"""

    @staticmethod
    def get_active_subscriptions(db: Session, organization_id: int, event_type: str) -> list[WebhookSubscription]:
        return (
            db.query(WebhookSubscription)
            .filter(
                WebhookSubscription.organization_id == organization_id,
                WebhookSubscription.event_type == event_type,
                WebhookSubscription.is_active.is_(True),
            )
            .order_by(WebhookSubscription.id)
            .all()
        )

    @staticmethod
    def get_subscription(db: Session, organization_id: int, subscription_id: str) -> Optional[WebhookSubscription]:
        """Look up by the external subscription id, scoped to the organization"""
        return (
            db.query(WebhookSubscription)
            .filter(
                WebhookSubscription.organization_id == organization_id,
                WebhookSubscription.subscription_id == subscription_id,
            )
            .first()
        )

    @staticmethod
    def create_delivery(db: Session, subscription: WebhookSubscription, **fields) -> WebhookLog:
        """Add a pending delivery record. Caller commits."""
        record = WebhookLog(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            target_url=subscription.target_url,
            status="pending",
            attempt_count=0,
            **fields,
        )
        db.add(record)
        return record

    @staticmethod
    def get_delivery(db: Session, record_id: int) -> Optional[WebhookLog]:
        return db.query(WebhookLog).filter(WebhookLog.id == record_id).first()

    @staticmethod
    def claim_delivery(db: Session, record_id: int) -> bool:
        """
        Move a pending/failed record to delivering and count the attempt.

        Returns False if the record is already terminal or another worker holds it.
        """
        claimed = (
            db.query(WebhookLog)
            .filter(WebhookLog.id == record_id, WebhookLog.status.in_(RETRYABLE_STATUSES))
            .update(
                {
                    WebhookLog.status: "delivering",
                    WebhookLog.attempt_count: WebhookLog.attempt_count + 1,
                    WebhookLog.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return claimed == 1

    @staticmethod
    def list_deliveries(db: Session, subscription: WebhookSubscription, limit: int = 50) -> list[WebhookLog]:
        return (
            db.query(WebhookLog)
            .filter(WebhookLog.subscription_id == subscription.id)
            .order_by(WebhookLog.triggered_at.desc(), WebhookLog.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_stalled_deliveries(
        db: Session, now: datetime, pending_grace: timedelta, delivering_timeout: timedelta, limit: int = 100
    ) -> list[WebhookLog]:
        """
        Records that should have been delivered by now:
        - pending past the grace period (enqueue failed)
        - failed with next_retry_at in the past (deferred job lost)
        - delivering for longer than the job timeout (worker died mid-attempt)
        """
        return (
            db.query(WebhookLog)
            .filter(
                or_(
                    (WebhookLog.status == "pending") & (WebhookLog.triggered_at <= now - pending_grace),
                    (WebhookLog.status == "failed") & (WebhookLog.next_retry_at <= now),
                    (WebhookLog.status == "delivering") & (WebhookLog.updated_at <= now - delivering_timeout),
                )
            )
            .order_by(WebhookLog.id)
            .limit(limit)
            .all()
        )
