"""Webhook router - Developer endpoints for testing and inspecting webhook subscriptions"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import OrganizationMember, User
from ...models_webhooks import WebhookSubscription
from ...shared.validators import validate_uuid
from .dispatcher import WebhookDispatcher
from .events import WebhookEventType, sample_event_data
from .repository import WebhookRepository
from .schemas import WebhookDeliveryResponse, WebhookHealthResponse, WebhookTestResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/developer/webhooks", tags=["Webhooks"])

ADMIN_ROLES = ("owner", "admin")


def get_webhook_dispatcher(request: Request, db: Session = Depends(get_db)) -> WebhookDispatcher:
    """Dependency injection for WebhookDispatcher using the app's delivery queue"""
    return WebhookDispatcher(db, queue=getattr(request.app.state, "webhook_queue", None))


def get_admin_membership(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> OrganizationMember:
    """Webhook management is limited to organization owners and admins"""
    membership = (
        db.query(OrganizationMember)
        .filter(
            OrganizationMember.user_id == current_user.id,
            OrganizationMember.status == "active",
            OrganizationMember.role.in_(ADMIN_ROLES),
        )
        .first()
    )
    if not membership:
        raise HTTPException(status_code=403, detail="Not authorized")
    return membership


def _get_subscription(db: Session, membership: OrganizationMember, subscription_id: str) -> WebhookSubscription:
    if not validate_uuid(subscription_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    subscription = WebhookRepository.get_subscription(db, membership.organization_id, subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return subscription


@router.post("/{subscription_id}/test", response_model=WebhookTestResponse)
async def send_test_webhook(
    subscription_id: str,
    membership: OrganizationMember = Depends(get_admin_membership),
    db: Session = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """Send a sample event, marked with _test, to an active subscription"""
    subscription = _get_subscription(db, membership, subscription_id)
    if not subscription.is_active:
        raise HTTPException(status_code=400, detail="Webhook is not active. Enable it first to send test events.")

    try:
        event_type = WebhookEventType(subscription.event_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown event type: {subscription.event_type}") from e

    test_data = sample_event_data(event_type)
    record = await dispatcher.trigger_subscription(subscription, {**test_data, "_test": True})
    logger.info(f"🧪 Test webhook {record.event_id} queued for subscription {subscription.subscription_id}")

    return WebhookTestResponse(
        message="Test webhook sent",
        delivery_id=record.id,
        event_id=record.event_id,
        event_type=event_type.value,
        target_url=subscription.target_url,
        test_data=test_data,
    )


@router.get("/{subscription_id}/deliveries", response_model=list[WebhookDeliveryResponse])
async def list_deliveries(
    subscription_id: str,
    limit: int = Query(50, ge=1, le=200),
    membership: OrganizationMember = Depends(get_admin_membership),
    db: Session = Depends(get_db),
):
    subscription = _get_subscription(db, membership, subscription_id)
    return WebhookRepository.list_deliveries(db, subscription, limit=limit)


@router.get("/{subscription_id}/health", response_model=WebhookHealthResponse)
async def get_webhook_health(
    subscription_id: str,
    membership: OrganizationMember = Depends(get_admin_membership),
    db: Session = Depends(get_db),
):
    """Failure counters for self-service diagnosis"""
    subscription = _get_subscription(db, membership, subscription_id)
    return WebhookHealthResponse(
        subscription_id=subscription.subscription_id,
        event_type=subscription.event_type,
        is_active=subscription.is_active,
        trigger_count=subscription.trigger_count or 0,
        failure_count=subscription.failure_count or 0,
        last_triggered_at=subscription.last_triggered_at,
        last_failure_at=subscription.last_failure_at,
        last_failure_reason=subscription.last_failure_reason,
    )
