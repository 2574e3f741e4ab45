import logging
import uuid
from dataclasses import dataclass

from .errors import Conflict, Forbidden, InvalidTransition, ValidationError
from .events import BOOKING_CREATED, BOOKING_TRANSITIONED
from .models import (
    WORKER_BOUND_STATUSES,
    Booking,
    BookingStatus,
    BookingStatusHistory,
    WorkerEarning,
)
from .rbac import Role

logger = logging.getLogger(__name__)

S = BookingStatus


@dataclass(frozen=True)
class Edge:
    action: str
    target: BookingStatus
    sources: dict  # Role -> frozenset[BookingStatus]

    def sources_for(self, role: Role) -> frozenset:
        return self.sources.get(role, frozenset())

    @property
    def all_sources(self) -> frozenset:
        out = frozenset()
        for statuses in self.sources.values():
            out |= statuses
        return out


TRANSITIONS = {
    "assign": Edge(
        "assign",
        S.WORKER_ASSIGNED,
        {Role.ADMIN: frozenset({S.PENDING}), Role.SYSTEM: frozenset({S.PENDING})},
    ),
    "accept": Edge(
        "accept",
        S.ACCEPTED,
        {Role.WORKER: frozenset({S.PENDING, S.WORKER_ASSIGNED})},
    ),
    "reject": Edge(
        "reject",
        S.REJECTED,
        {Role.WORKER: frozenset({S.WORKER_ASSIGNED})},
    ),
    "start": Edge(
        "start",
        S.IN_PROGRESS,
        {Role.WORKER: frozenset({S.ACCEPTED})},
    ),
    "cancel": Edge(
        "cancel",
        S.CANCELLED,
        {
            Role.WORKER: frozenset({S.ACCEPTED, S.IN_PROGRESS}),
            Role.CUSTOMER: frozenset({S.PENDING, S.WORKER_ASSIGNED, S.ACCEPTED}),
            Role.ADMIN: frozenset({S.PENDING, S.WORKER_ASSIGNED, S.ACCEPTED}),
        },
    ),
    "complete": Edge(
        "complete",
        S.COMPLETED,
        {Role.WORKER: frozenset({S.IN_PROGRESS}), Role.ADMIN: frozenset({S.IN_PROGRESS})},
    ),
}

_CLEARED_OTP = {"otp_code_hash": None, "otp_expires_at": None, "otp_attempts": None}


class BookingStateMachine:
    """
    Owns the transition table and the only write path for status, worker_id
    and the completion code. Every write is a compare-and-set on the status
    the caller last observed.
    """

    def __init__(self, store, bus, clock):
        self.store = store
        self.bus = bus
        self.clock = clock

    # ---- creation ----

    async def create(self, booking: Booking, actor) -> Booking:
        now = self.clock.now()
        booking.booking_id = booking.booking_id or str(uuid.uuid4())
        booking.status = S.PENDING.value
        booking.worker_id = None
        booking.created_at = now
        booking.updated_at = now

        history = BookingStatusHistory(
            booking_id=booking.booking_id,
            from_status=None,
            to_status=S.PENDING.value,
            action="create",
            actor_id=actor.id,
            actor_role=actor.role.value,
            at=now,
        )
        created = await self.store.insert(booking, history)
        logger.info("[booking-service] booking %s created by %s", created.booking_id, actor.id)

        await self.bus.publish(
            BOOKING_CREATED,
            {
                "booking_id": created.booking_id,
                "customer_id": created.customer_id,
                "service_type": created.service_type,
                "service_title": created.service_title,
                "status": created.status,
            },
        )
        return created

    # ---- transitions ----

    def _edge(self, action: str, expected: BookingStatus, actor) -> Edge:
        edge = TRANSITIONS.get(action)
        if edge is None or expected not in edge.all_sources:
            logger.error(
                "[booking-service] invalid transition %s from %s requested by %s:%s",
                action,
                expected.value,
                actor.role.value,
                actor.id,
            )
            raise InvalidTransition(f"Cannot {action} a booking that is {expected.value}")
        if expected not in edge.sources_for(actor.role):
            raise Forbidden(f"{actor.role.value} may not {action} a {expected.value} booking")
        return edge

    def _guard(self, booking: Booking, expected: BookingStatus, actor, action: str) -> list:
        """Ownership checks; returned clauses are re-checked inside the CAS."""
        if actor.role == Role.CUSTOMER:
            if booking.customer_id != actor.id:
                raise Forbidden("Booking belongs to another customer")
            return [Booking.customer_id == actor.id]

        if actor.role == Role.WORKER:
            if action == "accept" and expected == S.PENDING:
                return [Booking.worker_id.is_(None)]
            if booking.worker_id != actor.id:
                raise Forbidden("Booking is assigned to another worker")
            return [Booking.worker_id == actor.id]

        return []

    def _values(self, booking: Booking, edge: Edge, actor, changes: dict) -> dict:
        values = {"status": edge.target.value}

        if edge.action == "assign":
            worker_id = changes.get("worker_id")
            if not worker_id:
                raise ValidationError("worker_id is required to assign a booking")
            values["worker_id"] = worker_id
        elif edge.action == "accept":
            values["worker_id"] = actor.id
        elif edge.action in ("reject", "cancel"):
            values["worker_id"] = None
            values.update(_CLEARED_OTP)
        elif edge.action == "complete":
            values.update(_CLEARED_OTP)

        worker_after = values.get("worker_id", booking.worker_id)
        if (edge.target in WORKER_BOUND_STATUSES) != (worker_after is not None):
            raise InvalidTransition(f"worker_id does not fit a {edge.target.value} booking")
        return values

    async def transition(
        self,
        booking: Booking,
        expected: BookingStatus,
        actor,
        action: str,
        *,
        where=(),
        earning: WorkerEarning | None = None,
        **changes,
    ) -> Booking:
        expected = BookingStatus.parse(expected)
        edge = self._edge(action, expected, actor)
        clauses = self._guard(booking, expected, actor, action) + list(where)
        values = self._values(booking, edge, actor, changes)

        now = self.clock.now()
        history = BookingStatusHistory(
            booking_id=booking.booking_id,
            from_status=expected.value,
            to_status=edge.target.value,
            action=action,
            actor_id=actor.id,
            actor_role=actor.role.value,
            at=now,
        )

        updated = await self.store.compare_and_set(
            booking.booking_id,
            expected,
            values,
            where=clauses,
            history=history,
            earning=earning,
        )
        logger.info(
            "[booking-service] booking %s %s -> %s (%s by %s:%s)",
            updated.booking_id,
            expected.value,
            updated.status,
            action,
            actor.role.value,
            actor.id,
        )

        await self.bus.publish(
            BOOKING_TRANSITIONED,
            {
                "booking_id": updated.booking_id,
                "from": expected.value,
                "to": updated.status,
                "action": action,
                "actor_id": actor.id,
                "actor_role": actor.role.value,
                "at": now.isoformat(),
                "customer_id": updated.customer_id,
                "worker_id": updated.worker_id,
                "previous_worker_id": booking.worker_id,
                "service_title": updated.service_title,
            },
        )
        return updated

    async def run(self, booking_id: str, actor, action: str, *, retry: bool = True, **changes) -> Booking:
        """
        Read-then-transition for callers that did not observe a status
        themselves. A stale read is retried once with the fresh status.
        """
        booking = await self.store.get(booking_id)
        try:
            return await self.transition(booking, booking.booking_status, actor, action, **changes)
        except Conflict:
            if not retry:
                raise
            fresh = await self.store.get(booking_id)
            edge = TRANSITIONS[action]
            if fresh.booking_status not in edge.sources_for(actor.role):
                raise Conflict("Booking is no longer available for this action", current_status=fresh.booking_status)
            return await self.transition(fresh, fresh.booking_status, actor, action, **changes)

    # ---- completion code writes (status unchanged) ----

    async def store_completion_code(self, booking: Booking, actor, code_hash: str, expires_at) -> Booking:
        if actor.role != Role.WORKER or booking.worker_id != actor.id:
            raise Forbidden("Only the assigned worker can request completion")
        if booking.booking_status != S.IN_PROGRESS:
            raise InvalidTransition(f"Cannot request completion for a {booking.status} booking")
        return await self.store.compare_and_set(
            booking.booking_id,
            S.IN_PROGRESS,
            {"otp_code_hash": code_hash, "otp_expires_at": expires_at, "otp_attempts": 0},
            where=[Booking.worker_id == actor.id],
        )

    async def record_failed_attempt(self, booking: Booking, max_attempts: int) -> Booking:
        # the cap is part of the CAS so concurrent guesses cannot overshoot it
        return await self.store.compare_and_set(
            booking.booking_id,
            S.IN_PROGRESS,
            {"otp_attempts": Booking.otp_attempts + 1},
            where=[
                Booking.otp_code_hash == booking.otp_code_hash,
                Booking.otp_attempts < max_attempts,
            ],
        )

    async def clear_completion_code(self, booking: Booking) -> Booking:
        return await self.store.compare_and_set(
            booking.booking_id,
            S.IN_PROGRESS,
            dict(_CLEARED_OTP),
            where=[Booking.otp_code_hash == booking.otp_code_hash],
        )
