import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from .db import Base


class BookingStatus(str, enum.Enum):
    PENDING = "Pending"
    WORKER_ASSIGNED = "WorkerAssigned"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, raw) -> "BookingStatus":
        """
        Accepts the canonical value plus the legacy spellings clients still send
        ("Worker Assigned", "worker_assigned", "in-progress", "accepted", ...).
        """
        if isinstance(raw, cls):
            return raw
        key = "".join(ch for ch in str(raw or "").lower() if ch.isalnum())
        for status in cls:
            if status.value.lower() == key:
                return status
        raise ValueError(f"Unknown booking status: {raw!r}")

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED}
)

# statuses where worker_id must be set
WORKER_BOUND_STATUSES = frozenset(
    {
        BookingStatus.WORKER_ASSIGNED,
        BookingStatus.ACCEPTED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
    }
)


class PaymentMethod(str, enum.Enum):
    ONLINE = "online"
    COD = "cod"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=True, index=True)

    service_type = Column(String, nullable=False)
    service_title = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    worker_payment = Column(Numeric(12, 2), nullable=False)

    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String, nullable=False)
    address = Column(JSON, nullable=False)

    payment_method = Column(String, nullable=False)
    payment_status = Column(String, nullable=False)
    payment_order_id = Column(String, unique=True, nullable=True)
    payment_verified = Column(Boolean, nullable=False, default=False)

    # completion handshake; all three are null unless a code is pending
    otp_code_hash = Column(String, nullable=True)
    otp_expires_at = Column(DateTime(timezone=True), nullable=True)
    otp_attempts = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    history = relationship(
        "BookingStatusHistory",
        order_by="BookingStatusHistory.id",
        lazy="selectin",
    )

    @property
    def booking_status(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def has_pending_otp(self) -> bool:
        return self.otp_code_hash is not None


class BookingStatusHistory(Base):
    __tablename__ = "booking_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    action = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    at = Column(DateTime(timezone=True), nullable=False)


class Worker(Base):
    __tablename__ = "workers"

    id = Column(Integer, primary_key=True)
    worker_id = Column(String, unique=True, nullable=False, index=True)
    services = Column(JSON, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)


class WorkerEarning(Base):
    __tablename__ = "worker_earnings"

    id = Column(Integer, primary_key=True)
    worker_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, unique=True, nullable=False)
    date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    recipient_id = Column(String, nullable=False, index=True)
    recipient_role = Column(String, nullable=False)
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    booking_id = Column(String, nullable=True)
    dedup_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
