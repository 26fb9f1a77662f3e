"""
Outgoing Webhook Models
Subscriptions registered by organizations and the delivery log used for auditing and retries
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base
from .models import generate_public_id


class WebhookSubscription(Base):
    """An external endpoint that receives POSTs for one event type"""

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_id = Column(String(100), unique=True, nullable=False, default=generate_public_id)
    name = Column(String(255), nullable=True)

    event_type = Column(String(100), nullable=False, index=True)  # job.created, invoice.paid, ...
    target_url = Column(Text, nullable=False)
    filters = Column(JSON, default=dict)  # {"status": ["completed", "invoiced"], "client.type": "commercial"}

    secret_key = Column(String(255), nullable=True)  # HMAC signing secret
    headers = Column(JSON, default=dict)  # Custom headers sent with every delivery

    is_active = Column(Boolean, default=True, nullable=False)

    # Usage tracking
    last_triggered_at = Column(DateTime, nullable=True)
    trigger_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_failure_at = Column(DateTime, nullable=True)
    last_failure_reason = Column(Text, nullable=True)

    # Retry configuration
    max_retries = Column(Integer, default=3)
    retry_delay_seconds = Column(Integer, default=60)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    deliveries = relationship("WebhookLog", back_populates="subscription")


class WebhookLog(Base):
    """One event's delivery to one subscription, across all of its attempts"""

    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("webhook_subscriptions.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)

    event_type = Column(String(100), nullable=False)
    event_id = Column(String(36), nullable=False, index=True)  # Shared by every retry, for de-duplication

    target_url = Column(Text, nullable=False)
    request_body = Column(Text, nullable=False)  # Exact bytes that are signed and sent
    request_headers = Column(JSON, nullable=True)  # Without the signature

    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    delivery_duration_ms = Column(Integer, nullable=True)

    # pending, delivering, failed, success, exhausted
    status = Column(String(50), nullable=False, default="pending", index=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)

    triggered_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("WebhookSubscription", back_populates="deliveries")
