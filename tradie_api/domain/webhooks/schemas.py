"""Webhook schemas - Developer API responses"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class WebhookTestResponse(BaseModel):
    message: str
    delivery_id: int
    event_id: str
    event_type: str
    target_url: str
    test_data: dict[str, Any]


class WebhookDeliveryResponse(BaseModel):
    id: int
    event_type: str
    event_id: str
    status: str
    attempt_count: int
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    delivery_duration_ms: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    triggered_at: datetime
    delivered_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookHealthResponse(BaseModel):
    subscription_id: str
    event_type: str
    is_active: bool
    trigger_count: int
    failure_count: int
    last_triggered_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
