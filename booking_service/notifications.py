import asyncio
import hashlib
import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import select, update

from .clock import as_utc
from .errors import Forbidden, NotFound
from .events import (
    ASSIGNMENT_ESCALATED,
    BOOKING_TRANSITIONED,
    NEW_BOOKING_AVAILABLE,
    PAYMENT_STATUS,
)
from .models import BookingStatus, Notification
from .rbac import Role

logger = logging.getLogger(__name__)

ADMIN_RECIPIENT = "admins"

# transition target -> notification type
TRANSITION_TYPES = {
    BookingStatus.WORKER_ASSIGNED.value: "worker_assigned",
    BookingStatus.ACCEPTED.value: "booking_accepted",
    BookingStatus.REJECTED.value: "booking_rejected",
    BookingStatus.IN_PROGRESS.value: "job_started",
    BookingStatus.COMPLETED.value: "booking_completed",
    BookingStatus.CANCELLED.value: "booking_cancelled",
}


def dedup_key(ntype: str, message: str, created_at: datetime, bucket_seconds: int = 60) -> str:
    """
    Key clients use to collapse the same logical notification arriving via
    live push and via a later poll.
    """
    bucket = int(as_utc(created_at).timestamp() // max(bucket_seconds, 1))
    raw = f"{ntype}|{message}|{bucket}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def serialize(n: Notification) -> dict:
    return {
        "id": n.id,
        "recipient_id": n.recipient_id,
        "recipient_role": n.recipient_role,
        "type": n.type,
        "message": n.message,
        "booking_id": n.booking_id,
        "dedup_key": n.dedup_key,
        "created_at": as_utc(n.created_at).isoformat(),
        "read": n.read,
    }


class ConnectionManager:
    """Live sockets per recipient id; anything with an async send_json works."""

    def __init__(self):
        self._connections = defaultdict(set)

    def connect(self, recipient_id: str, websocket):
        self._connections[recipient_id].add(websocket)

    def disconnect(self, recipient_id: str, websocket):
        sockets = self._connections.get(recipient_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self._connections.pop(recipient_id, None)

    def is_connected(self, recipient_id: str) -> bool:
        return bool(self._connections.get(recipient_id))

    def connected_ids(self) -> list[str]:
        return list(self._connections)

    async def send(self, recipient_id: str, message: dict) -> bool:
        delivered = False
        for ws in list(self._connections.get(recipient_id, ())):
            try:
                await ws.send_json(message)
                delivered = True
            except Exception as e:
                logger.warning("[booking-service] push to %s failed, dropping socket: %s", recipient_id, e)
                self.disconnect(recipient_id, ws)
        return delivered


def recipient_key(recipient_id: str, role: Role) -> str:
    return ADMIN_RECIPIENT if role == Role.ADMIN else recipient_id


class NotificationBroadcaster:
    def __init__(self, session_factory, connections: ConnectionManager, bus, clock, settings):
        self._sessions = session_factory
        self.connections = connections
        self.clock = clock
        self.settings = settings

        bus.subscribe(BOOKING_TRANSITIONED, self._on_transition)
        bus.subscribe(NEW_BOOKING_AVAILABLE, self._on_new_booking)
        bus.subscribe(ASSIGNMENT_ESCALATED, self._on_escalation)
        bus.subscribe(PAYMENT_STATUS, self._on_payment_status)

    # ---- event handlers ----

    async def _on_transition(self, event: dict):
        data = event["data"]
        ntype = TRANSITION_TYPES.get(data["to"])
        if ntype is None:
            return

        title = data.get("service_title") or "your service"
        booking_id = data["booking_id"]
        customer = data["customer_id"]
        worker = data.get("worker_id")
        previous = data.get("previous_worker_id")
        actor_role = data.get("actor_role")

        out = []
        if ntype == "worker_assigned":
            out.append((worker, Role.WORKER, f"You have been assigned to {title}. Please accept or reject."))
            out.append((customer, Role.CUSTOMER, f"A worker has been assigned to your {title} booking."))
        elif ntype == "booking_accepted":
            out.append((customer, Role.CUSTOMER, f"Your {title} booking was accepted by a worker."))
        elif ntype == "booking_rejected":
            out.append((customer, Role.CUSTOMER, f"The assigned worker rejected your {title} booking."))
            out.append((ADMIN_RECIPIENT, Role.ADMIN, f"Booking {booking_id} ({title}) was rejected by worker {previous}."))
        elif ntype == "job_started":
            out.append((customer, Role.CUSTOMER, f"Work on your {title} booking has started."))
        elif ntype == "booking_completed":
            out.append((customer, Role.CUSTOMER, f"Your {title} booking is complete."))
            out.append((worker, Role.WORKER, f"Booking {booking_id} completed; payment credited to your earnings."))
        elif ntype == "booking_cancelled":
            if actor_role != Role.CUSTOMER.value:
                out.append((customer, Role.CUSTOMER, f"Your {title} booking was cancelled."))
            if previous and actor_role != Role.WORKER.value:
                out.append((previous, Role.WORKER, f"Booking {booking_id} ({title}) was cancelled."))
            out.append((ADMIN_RECIPIENT, Role.ADMIN, f"Booking {booking_id} ({title}) was cancelled by {actor_role}."))

        for recipient_id, role, message in out:
            if recipient_id:
                await self.notify(recipient_id, role, ntype, message, booking_id=booking_id)

    async def _on_new_booking(self, event: dict):
        data = event["data"]
        message = (
            f"New {data.get('service_title')} job available on "
            f"{data.get('scheduled_date')} at {data.get('scheduled_time')}."
        )
        for worker_id in data.get("recipients") or []:
            await self.notify(worker_id, Role.WORKER, "new_booking_available", message, booking_id=data["booking_id"])

    async def _on_escalation(self, event: dict):
        data = event["data"]
        await self.notify(
            ADMIN_RECIPIENT,
            Role.ADMIN,
            "assignment_escalated",
            f"No worker accepted booking {data['booking_id']} ({data.get('service_title')}); assign manually.",
            booking_id=data["booking_id"],
        )

    async def _on_payment_status(self, event: dict):
        data = event["data"]
        customer = data.get("customer_id")
        if not customer:
            return
        await self.notify(
            customer,
            Role.CUSTOMER,
            "payment_status",
            data.get("message") or f"Payment {data.get('status')}",
            booking_id=data.get("booking_id"),
        )
        await self.connections.send(
            customer,
            {
                "event": "payment-status",
                "data": {
                    "bookingId": data.get("booking_id"),
                    "status": data.get("status"),
                    "message": data.get("message"),
                },
            },
        )

    # ---- persistence + push ----

    async def notify(self, recipient_id: str, role: Role, ntype: str, message: str, booking_id: str | None = None) -> Notification:
        now = self.clock.now()
        recipient_id = recipient_key(recipient_id, role)
        notification = Notification(
            recipient_id=recipient_id,
            recipient_role=role.value,
            type=ntype,
            message=message,
            booking_id=booking_id,
            dedup_key=dedup_key(ntype, message, now, self.settings.notification_dedup_bucket_seconds),
            created_at=now,
            read=False,
        )
        async with self._sessions() as db:
            db.add(notification)
            await db.commit()

        await self._push(notification)
        return notification

    async def _push(self, notification: Notification) -> bool:
        if not self.connections.is_connected(notification.recipient_id):
            return False
        delivered = await self.connections.send(
            notification.recipient_id,
            {"event": "notification", "data": serialize(notification)},
        )
        if delivered:
            async with self._sessions() as db:
                await db.execute(
                    update(Notification)
                    .where(Notification.id == notification.id)
                    .values(delivered_at=self.clock.now())
                )
                await db.commit()
            notification.delivered_at = self.clock.now()
        return delivered

    async def redeliver_pending(self) -> int:
        """Push persisted notifications that never reached a live socket."""
        connected = self.connections.connected_ids()
        if not connected:
            return 0
        async with self._sessions() as db:
            res = await db.execute(
                select(Notification)
                .where(
                    Notification.recipient_id.in_(connected),
                    Notification.delivered_at.is_(None),
                    Notification.read.is_(False),
                )
                .order_by(Notification.id)
            )
            pending = list(res.scalars().all())

        pushed = 0
        for notification in pending:
            if await self._push(notification):
                pushed += 1
        return pushed

    # ---- poll surface ----

    async def unread(self, actor) -> list[Notification]:
        recipient_id = recipient_key(actor.id, actor.role)
        async with self._sessions() as db:
            res = await db.execute(
                select(Notification)
                .where(
                    Notification.recipient_id == recipient_id,
                    Notification.recipient_role == actor.role.value,
                    Notification.read.is_(False),
                )
                .order_by(Notification.id)
            )
            return list(res.scalars().all())

    async def mark_read(self, notification_id: int, actor) -> Notification:
        async with self._sessions() as db:
            res = await db.execute(select(Notification).where(Notification.id == notification_id))
            notification = res.scalar_one_or_none()
            if notification is None:
                raise NotFound("Notification not found")
            if (
                notification.recipient_id != recipient_key(actor.id, actor.role)
                or notification.recipient_role != actor.role.value
            ):
                raise Forbidden("Notification belongs to another recipient")
            notification.read = True
            await db.commit()
            return notification

    async def replay_unread(self, actor) -> int:
        sent = 0
        for notification in await self.unread(actor):
            if await self._push(notification):
                sent += 1
        return sent


async def redelivery_loop(broadcaster: NotificationBroadcaster, stop_event: asyncio.Event, interval: float = 15.0):
    while not stop_event.is_set():
        try:
            await broadcaster.redeliver_pending()
        except Exception:
            logger.exception("[booking-service] notification redelivery failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
