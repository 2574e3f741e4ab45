from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import BookingStatus, PaymentMethod


class Address(BaseModel):
    line1: str
    line2: Optional[str] = None
    landmark: Optional[str] = None
    city: str
    state: str
    pincode: str

    @field_validator("line1", "city", "state", "pincode")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class CreateBookingRequest(BaseModel):
    service_type: str
    service_title: str
    scheduled_date: date
    scheduled_time: str
    address: Address
    amount: Decimal = Field(gt=0, decimal_places=2)
    payment_method: PaymentMethod
    # online payments confirmed synchronously by the gateway SDK
    payment_confirmed: bool = False
    order_id: Optional[str] = None

    @field_validator("service_type", "service_title", "scheduled_time")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class ReconcilePaymentRequest(BaseModel):
    order_id: str
    booking: CreateBookingRequest


class AcceptRequest(BaseModel):
    expected_status: str = BookingStatus.PENDING.value

    @field_validator("expected_status")
    @classmethod
    def canonical(cls, v: str) -> str:
        return BookingStatus.parse(v).value


class AssignRequest(BaseModel):
    worker_id: str


class VerifyCompletionRequest(BaseModel):
    code: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class UpsertWorker(BaseModel):
    services: List[str]
    is_available: bool = True
    is_verified: bool = False


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str] = None
    to_status: str
    action: str
    actor_id: str
    actor_role: str
    at: datetime


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    customer_id: str
    worker_id: Optional[str] = None
    service_type: str
    service_title: str
    status: BookingStatus
    amount: Decimal
    worker_payment: Decimal
    scheduled_date: date
    scheduled_time: str
    address: dict
    payment_method: str
    payment_status: str
    payment_order_id: Optional[str] = None
    payment_verified: bool
    completion_pending: bool = False
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusHistoryEntry] = []

    @classmethod
    def from_booking(cls, booking) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            customer_id=booking.customer_id,
            worker_id=booking.worker_id,
            service_type=booking.service_type,
            service_title=booking.service_title,
            status=BookingStatus(booking.status),
            amount=booking.amount,
            worker_payment=booking.worker_payment,
            scheduled_date=booking.scheduled_date,
            scheduled_time=booking.scheduled_time,
            address=booking.address,
            payment_method=booking.payment_method,
            payment_status=booking.payment_status,
            payment_order_id=booking.payment_order_id,
            payment_verified=bool(booking.payment_verified),
            completion_pending=booking.has_pending_otp,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
            status_history=[StatusHistoryEntry.model_validate(h) for h in booking.history],
        )


class ReconcileResponse(BaseModel):
    booking: BookingResponse
    created: bool
    warning: Optional[str] = None


class CompletionRequestResponse(BaseModel):
    booking_id: str
    delivered: bool
    code_if_undelivered: Optional[str] = None


class EarningEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    date: date
    amount: Decimal


class EarningsResponse(BaseModel):
    worker_id: str
    total: Decimal
    entries: List[EarningEntry]


class WorkerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    worker_id: str
    services: List[str]
    is_available: bool
    is_verified: bool


class NotificationResponse(BaseModel):
    id: int
    recipient_id: str
    recipient_role: str
    type: str
    message: str
    booking_id: Optional[str] = None
    dedup_key: str
    created_at: str
    read: bool
