"""Outgoing webhook event types and payload construction"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class WebhookEventType(str, Enum):
    # Jobs
    JOB_CREATED = "job.created"
    JOB_UPDATED = "job.updated"
    JOB_COMPLETED = "job.completed"
    JOB_STATUS_CHANGED = "job.status_changed"
    JOB_ASSIGNED = "job.assigned"
    JOB_DELETED = "job.deleted"
    # Clients
    CLIENT_CREATED = "client.created"
    CLIENT_UPDATED = "client.updated"
    CLIENT_DELETED = "client.deleted"
    # Invoices
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PARTIALLY_PAID = "invoice.partially_paid"
    INVOICE_OVERDUE = "invoice.overdue"
    INVOICE_DELETED = "invoice.deleted"
    # Quotes
    QUOTE_CREATED = "quote.created"
    QUOTE_SENT = "quote.sent"
    QUOTE_ACCEPTED = "quote.accepted"
    QUOTE_REJECTED = "quote.rejected"
    QUOTE_EXPIRED = "quote.expired"
    QUOTE_DELETED = "quote.deleted"
    # Appointments
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_REMINDER = "appointment.reminder"
    # Expenses
    EXPENSE_CREATED = "expense.created"
    EXPENSE_APPROVED = "expense.approved"
    EXPENSE_REJECTED = "expense.rejected"
    # SMS
    SMS_RECEIVED = "sms.received"
    SMS_SENT = "sms.sent"
    # Time tracking
    TIME_LOG_CREATED = "time_log.created"
    TIME_LOG_APPROVED = "time_log.approved"
    # Completion forms
    COMPLETION_FORM_SUBMITTED = "completion_form.submitted"
    COMPLETION_FORM_UPDATED = "completion_form.updated"
    # Payments
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_REFUNDED = "payment.refunded"

    @property
    def resource(self) -> str:
        return self.value.split(".", 1)[0]


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with a Z suffix"""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _resource_id(event_type: WebhookEventType, data: dict[str, Any]) -> Optional[str]:
    for key in (f"{event_type.resource}_id", "id"):
        if data.get(key) is not None:
            return str(data[key])
    return None


def build_event_payload(
    event_type: WebhookEventType,
    organization_id: int,
    data: dict[str, Any],
    resource_id: Optional[str] = None,
    event_id: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> dict[str, Any]:
    """The JSON document every subscriber to this event receives"""
    return {
        "event": event_type.value,
        "event_id": event_id or str(uuid.uuid4()),
        "organization_id": str(organization_id),
        "resource_id": resource_id or _resource_id(event_type, data),
        "timestamp": timestamp or utc_timestamp(),
        "data": data,
    }


def serialize_payload(payload: dict[str, Any]) -> str:
    """Serialize once; the stored string is what gets signed and resent on every attempt"""
    return json.dumps(payload, separators=(",", ":"), default=str)


# ============================================================================
# SAMPLE DATA FOR TEST DELIVERIES
# ============================================================================

SAMPLE_ID = "00000000-0000-0000-0000-000000000000"
SAMPLE_ADDRESS = {"line1": "123 Test Street", "city": "Sydney", "state": "NSW", "postcode": "2000"}


def sample_event_data(event_type: WebhookEventType) -> dict[str, Any]:
    """Representative data for a test delivery of this event type"""
    now = utc_timestamp()
    resource = event_type.resource

    if resource == "job":
        return {
            "job_id": SAMPLE_ID,
            "job_number": "JOB-2025-0001",
            "title": "Test Job",
            "description": "This is a test job created for webhook testing",
            "status": "scheduled",
            "client": {"id": SAMPLE_ID, "name": "Test Client", "email": "test@example.com"},
            "site_address": SAMPLE_ADDRESS,
            "scheduled_date": now,
            "quoted_amount": "250.00",
            "created_at": now,
        }
    if resource == "client":
        return {
            "client_id": SAMPLE_ID,
            "client_type": "residential",
            "first_name": "Test",
            "last_name": "Client",
            "email": "test@example.com",
            "address": SAMPLE_ADDRESS,
            "created_at": now,
        }
    if resource in ("invoice", "quote"):
        return {
            f"{resource}_id": SAMPLE_ID,
            f"{resource}_number": f"{resource[:3].upper()}-2025-0001",
            "status": event_type.value.split(".", 1)[1],
            "client": {"id": SAMPLE_ID, "name": "Test Client"},
            "subtotal": "250.00",
            "gst_amount": "25.00",
            "total_amount": "275.00",
            "created_at": now,
        }
    if resource == "payment":
        return {"payment_id": SAMPLE_ID, "invoice_id": SAMPLE_ID, "amount": "275.00", "method": "card", "paid_at": now}
    return {f"{resource}_id": SAMPLE_ID, "created_at": now}
