import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from passlib.context import CryptContext

from .clock import as_utc
from .errors import (
    Conflict,
    DeliveryFailure,
    Forbidden,
    InvalidTransition,
    OtpAttemptsExceeded,
    OtpExpired,
    OtpMismatch,
)
from .models import Booking, BookingStatus, WorkerEarning
from .rbac import Role

logger = logging.getLogger(__name__)

# codes are short-lived and low entropy; pbkdf2 keeps them off the row in clear
otp_context = CryptContext(schemes=["pbkdf2_sha256"], pbkdf2_sha256__default_rounds=10000)


def generate_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


@dataclass
class CompletionRequest:
    booking: Booking
    delivered: bool
    code_if_undelivered: str | None = None


@dataclass
class EarningsSummary:
    worker_id: str
    total: Decimal
    entries: list


class OtpCompletionService:
    def __init__(self, state_machine, channel, clock, settings, code_generator=generate_code):
        self.machine = state_machine
        self.channel = channel
        self.clock = clock
        self.settings = settings
        self.generate_code = code_generator

    async def request_completion(self, booking_id: str, actor) -> CompletionRequest:
        booking = await self.machine.store.get(booking_id)

        code = self.generate_code()
        expires_at = self.clock.now() + timedelta(minutes=self.settings.otp_ttl_minutes)
        # overwriting the hash invalidates whatever code was issued before
        booking = await self.machine.store_completion_code(
            booking, actor, otp_context.hash(code), expires_at
        )

        try:
            await self.channel.send(booking.customer_id, booking.booking_id, code, expires_at)
        except DeliveryFailure as e:
            logger.warning(
                "[booking-service] completion code for %s not delivered: %s", booking_id, e.message
            )
            if self.settings.otp_expose_code_on_failure:
                return CompletionRequest(booking=booking, delivered=False, code_if_undelivered=code)
            return CompletionRequest(booking=booking, delivered=False)

        return CompletionRequest(booking=booking, delivered=True)

    async def verify(self, booking_id: str, code: str, actor) -> Booking:
        if actor.role != Role.WORKER:
            raise Forbidden("Only the assigned worker submits the completion code")

        booking = await self.machine.store.get(booking_id)
        if booking.booking_status != BookingStatus.IN_PROGRESS:
            raise InvalidTransition(f"Cannot complete a booking that is {booking.status}")
        if booking.worker_id != actor.id:
            raise Forbidden("Booking is assigned to another worker")
        if not booking.has_pending_otp:
            raise OtpExpired("No active completion code; request a new one")

        if self.clock.now() > as_utc(booking.otp_expires_at):
            try:
                await self.machine.clear_completion_code(booking)
            except Conflict:
                pass  # already replaced or cleared
            raise OtpExpired()

        max_attempts = self.settings.otp_max_attempts
        if booking.otp_attempts >= max_attempts:
            raise OtpAttemptsExceeded()

        if not otp_context.verify(str(code or "").strip(), booking.otp_code_hash):
            try:
                booking = await self.machine.record_failed_attempt(booking, max_attempts)
            except Conflict:
                await self._raise_if_locked(booking)
                # a fresh code was issued meanwhile; the submitted one is stale
                raise OtpMismatch()
            if booking.otp_attempts >= max_attempts:
                raise OtpAttemptsExceeded()
            raise OtpMismatch()

        try:
            return await self._complete(
                booking,
                actor,
                where=[
                    Booking.otp_code_hash == booking.otp_code_hash,
                    Booking.otp_attempts < max_attempts,
                ],
            )
        except Conflict:
            await self._raise_if_locked(booking)
            raise

    async def _raise_if_locked(self, booking: Booking):
        """Raises OtpAttemptsExceeded if the same code has since hit the cap."""
        fresh = await self.machine.store.get(booking.booking_id)
        if (
            fresh.otp_code_hash == booking.otp_code_hash
            and (fresh.otp_attempts or 0) >= self.settings.otp_max_attempts
        ):
            raise OtpAttemptsExceeded()

    async def override_completion(self, booking_id: str, actor) -> Booking:
        if actor.role != Role.ADMIN:
            raise Forbidden("Only admins can complete a booking without a code")
        booking = await self.machine.store.get(booking_id)
        logger.warning("[booking-service] admin %s completing %s without code", actor.id, booking_id)
        return await self._complete(booking, actor)

    async def _complete(self, booking: Booking, actor, where=()) -> Booking:
        earning = WorkerEarning(
            worker_id=booking.worker_id,
            booking_id=booking.booking_id,
            date=self.clock.now().date(),
            amount=booking.worker_payment,
        )
        return await self.machine.transition(
            booking,
            BookingStatus.IN_PROGRESS,
            actor,
            "complete",
            where=where,
            earning=earning,
        )

    async def reap_expired(self) -> int:
        cleared = 0
        for booking in await self.machine.store.with_pending_otp_before(self.clock.now()):
            try:
                await self.machine.clear_completion_code(booking)
                cleared += 1
            except Conflict:
                continue
        if cleared:
            logger.info("[booking-service] cleared %d expired completion codes", cleared)
        return cleared

    async def earnings(self, worker_id: str, actor) -> EarningsSummary:
        if actor.role == Role.WORKER and actor.id != worker_id:
            raise Forbidden("Workers can only view their own earnings")
        if actor.role not in (Role.WORKER, Role.ADMIN):
            raise Forbidden("Access forbidden for this role")
        entries = await self.machine.store.earnings(worker_id)
        total = sum((Decimal(e.amount) for e in entries), Decimal("0"))
        return EarningsSummary(worker_id=worker_id, total=total, entries=entries)


async def otp_reaper_loop(service: OtpCompletionService, stop_event: asyncio.Event, interval: float = 30.0):
    while not stop_event.is_set():
        try:
            await service.reap_expired()
        except Exception:
            logger.exception("[booking-service] completion code reaper failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
