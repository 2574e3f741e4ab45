import asyncio
import logging

from sqlalchemy import select

from .errors import Conflict, Forbidden, NotFound, ValidationError
from .events import ASSIGNMENT_ESCALATED, BOOKING_CREATED, NEW_BOOKING_AVAILABLE
from .models import Booking, BookingStatus, Worker
from .rbac import Role

logger = logging.getLogger(__name__)

ESCALATION_ZSET = "assignment_deadlines"


def norm(s: str) -> str:
    return " ".join((s or "").strip().lower().split())


def reject_key(booking_id: str, worker_id: str) -> str:
    return f"assignment_reject:{booking_id}:{worker_id}"


class AssignmentDispatcher:
    """
    Fans a pending booking out to every eligible worker and lets the first
    accept win through the state machine's compare-and-set. Never picks a
    worker itself.
    """

    def __init__(self, session_factory, redis_client, state_machine, bus, clock, settings):
        self._sessions = session_factory
        self.redis = redis_client
        self.machine = state_machine
        self.bus = bus
        self.clock = clock
        self.settings = settings

        bus.subscribe(BOOKING_CREATED, self._on_booking_created)

    # ---- worker directory ----

    async def upsert_worker(self, worker_id: str, services: list[str], is_available: bool, is_verified: bool) -> Worker:
        async with self._sessions() as db:
            res = await db.execute(select(Worker).where(Worker.worker_id == worker_id))
            worker = res.scalar_one_or_none()
            if worker is None:
                worker = Worker(worker_id=worker_id)
                db.add(worker)
            worker.services = [s for s in services if norm(s)]
            worker.is_available = is_available
            worker.is_verified = is_verified
            await db.commit()
            return worker

    async def get_worker(self, worker_id: str) -> Worker | None:
        async with self._sessions() as db:
            res = await db.execute(select(Worker).where(Worker.worker_id == worker_id))
            return res.scalar_one_or_none()

    def _is_eligible(self, worker: Worker, service_type: str) -> bool:
        if not worker.is_available or not worker.is_verified:
            return False
        skills = {norm(s) for s in (worker.services or [])}
        return norm(service_type) in skills

    async def eligible_workers(self, service_type: str) -> list[str]:
        async with self._sessions() as db:
            res = await db.execute(
                select(Worker).where(Worker.is_available.is_(True), Worker.is_verified.is_(True))
            )
            workers = res.scalars().all()
        return sorted(w.worker_id for w in workers if self._is_eligible(w, service_type))

    async def _in_cooldown(self, booking_id: str, worker_id: str) -> bool:
        return bool(await self.redis.exists(reject_key(booking_id, worker_id)))

    # ---- fan-out ----

    async def _on_booking_created(self, event: dict):
        data = event.get("data") or {}
        booking_id = data.get("booking_id")
        if booking_id:
            await self.dispatch(booking_id)

    async def dispatch(self, booking_id: str) -> list[str]:
        booking = await self.machine.store.get(booking_id)
        if booking.booking_status != BookingStatus.PENDING:
            return []

        candidates = await self.eligible_workers(booking.service_type)
        recipients = [w for w in candidates if not await self._in_cooldown(booking_id, w)]

        deadline = self.clock.now().timestamp() + self.settings.assignment_timeout_seconds
        await self.redis.zadd(ESCALATION_ZSET, {booking_id: deadline})

        if not recipients:
            logger.warning("[booking-service] no eligible workers for booking %s (%s)", booking_id, booking.service_type)

        await self.bus.publish(
            NEW_BOOKING_AVAILABLE,
            {
                "booking_id": booking_id,
                "service_type": booking.service_type,
                "service_title": booking.service_title,
                "scheduled_date": booking.scheduled_date.isoformat(),
                "scheduled_time": booking.scheduled_time,
                "recipients": recipients,
            },
        )
        return recipients

    async def redispatch(self, booking_id: str, actor) -> list[str]:
        if actor.role != Role.ADMIN:
            raise Forbidden("Only admins can re-broadcast a booking")
        booking = await self.machine.store.get(booking_id)
        if booking.booking_status != BookingStatus.PENDING:
            raise Conflict(f"Booking is {booking.status}; only pending bookings are broadcast")
        return await self.dispatch(booking_id)

    # ---- accept race ----

    async def accept(self, booking_id: str, actor, expected_status) -> Booking:
        if actor.role != Role.WORKER:
            raise Forbidden("Only workers can accept bookings")

        expected = BookingStatus.parse(expected_status)
        booking = await self.machine.store.get(booking_id)

        if expected == BookingStatus.PENDING:
            worker = await self.get_worker(actor.id)
            if worker is None or not self._is_eligible(worker, booking.service_type):
                raise Forbidden("Worker is not eligible for this booking")

        try:
            accepted = await self.machine.transition(booking, expected, actor, "accept")
        except Conflict as e:
            logger.info("[booking-service] accept lost by %s on %s: %s", actor.id, booking_id, e.message)
            raise Conflict("Job no longer available: already taken", current_status=e.current_status)

        await self.redis.zrem(ESCALATION_ZSET, booking_id)
        return accepted

    async def reject(self, booking_id: str, actor) -> Booking:
        if actor.role != Role.WORKER:
            raise Forbidden("Only workers can reject bookings")

        booking = await self.machine.store.get(booking_id)
        status = booking.booking_status

        if status == BookingStatus.PENDING:
            # broadcast candidate: remember the decline, global state untouched
            await self.redis.set(
                reject_key(booking_id, actor.id),
                "1",
                ex=self.settings.assignment_reject_cooldown_seconds,
            )
            logger.info("[booking-service] worker %s declined broadcast of %s", actor.id, booking_id)
            return booking

        return await self.machine.transition(booking, status, actor, "reject")

    async def assign(self, booking_id: str, worker_id: str, actor) -> Booking:
        if actor.role not in (Role.ADMIN, Role.SYSTEM):
            raise Forbidden("Only admins can assign workers")
        worker = await self.get_worker(worker_id)
        if worker is None:
            raise ValidationError(f"Unknown worker {worker_id}")

        booking = await self.machine.store.get(booking_id)
        assigned = await self.machine.transition(
            booking, BookingStatus.PENDING, actor, "assign", worker_id=worker_id
        )
        await self.redis.zrem(ESCALATION_ZSET, booking_id)
        return assigned

    # ---- escalation ----

    async def check_escalations(self) -> list[str]:
        now = self.clock.now().timestamp()
        due = await self.redis.zrangebyscore(ESCALATION_ZSET, 0, now, start=0, num=50)
        escalated = []
        for booking_id in due:
            # zrem result makes sure only one sweeper escalates a booking
            if not await self.redis.zrem(ESCALATION_ZSET, booking_id):
                continue
            try:
                booking = await self.machine.store.get(booking_id)
            except NotFound:
                continue
            if booking.booking_status != BookingStatus.PENDING:
                continue

            logger.warning("[booking-service] no worker accepted booking %s; escalating to admins", booking_id)
            await self.bus.publish(
                ASSIGNMENT_ESCALATED,
                {
                    "booking_id": booking_id,
                    "service_type": booking.service_type,
                    "service_title": booking.service_title,
                    "customer_id": booking.customer_id,
                },
            )
            escalated.append(booking_id)
        return escalated


async def escalation_loop(dispatcher: AssignmentDispatcher, stop_event: asyncio.Event, interval: float = 5.0):
    while not stop_event.is_set():
        try:
            await dispatcher.check_escalations()
        except Exception:
            logger.exception("[booking-service] escalation sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
