import json
import uuid
from datetime import datetime, timezone

BOOKING_CREATED = "booking.created"
BOOKING_TRANSITIONED = "booking.transitioned"
NEW_BOOKING_AVAILABLE = "new_booking_available"
ASSIGNMENT_ESCALATED = "assignment_escalated"
PAYMENT_STATUS = "payment_status"

# consumed from the payment gateway
PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"


def build_event(event_type: str, data: dict, occurred_at: datetime | None = None) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": (occurred_at or datetime.now(timezone.utc)).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)
