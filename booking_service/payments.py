import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .errors import Forbidden, PaymentUnverified
from .events import PAYMENT_STATUS
from .models import Booking, PaymentMethod, PaymentStatus
from .rbac import Role
from .store import DuplicateOrder

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def capture_key(order_id: str) -> str:
    return f"payment_capture:{order_id}"


def worker_share(amount: Decimal, commission_rate: Decimal) -> Decimal:
    amount = Decimal(amount)
    commission = (amount * Decimal(commission_rate)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return (amount - commission).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class ReconcileResult:
    booking: Booking
    created: bool
    warning: PaymentUnverified | None = None


class PaymentReconciler:
    """
    Turns a payment into exactly one booking. payment_order_id is unique in
    the store; a losing concurrent insert reads back the winner's booking.

    The client "I paid" signal is advisory: bookings created from it are
    flagged unverified until a gateway capture for the same order arrives.
    """

    def __init__(self, state_machine, redis_client, bus, settings):
        self.machine = state_machine
        self.redis = redis_client
        self.bus = bus
        self.settings = settings

    def _draft_to_booking(self, draft, customer_id: str) -> Booking:
        return Booking(
            customer_id=customer_id,
            service_type=draft.service_type,
            service_title=draft.service_title,
            scheduled_date=draft.scheduled_date,
            scheduled_time=draft.scheduled_time,
            address=draft.address.model_dump(exclude_none=True),
            amount=draft.amount,
            worker_payment=worker_share(draft.amount, self.settings.commission_rate),
            payment_method=draft.payment_method.value,
        )

    async def create_booking(self, draft, actor) -> Booking:
        """Immediate path: COD, or online with synchronous confirmation."""
        if actor.role != Role.CUSTOMER:
            raise Forbidden("Only customers can create bookings")

        paid = draft.payment_method == PaymentMethod.ONLINE and draft.payment_confirmed
        if draft.order_id:
            result = await self._create_once(draft.order_id, draft, actor, paid=paid, verified=paid)
            return result.booking

        booking = self._draft_to_booking(draft, actor.id)
        booking.payment_status = (PaymentStatus.PAID if paid else PaymentStatus.PENDING).value
        booking.payment_verified = paid
        return await self.machine.create(booking, actor)

    async def reconcile(self, order_id: str, draft, actor) -> ReconcileResult:
        """Deferred path: client reports an external (UPI) payment for order_id."""
        if actor.role != Role.CUSTOMER:
            raise Forbidden("Only customers can reconcile their payments")

        verified = bool(await self.redis.exists(capture_key(order_id)))
        result = await self._create_once(order_id, draft, actor, paid=True, verified=verified)

        if result.created:
            if not verified and await self.redis.exists(capture_key(order_id)):
                # the capture landed between the check above and the insert
                result.booking = await self.machine.store.update_payment(
                    result.booking.booking_id,
                    payment_status=PaymentStatus.PAID.value,
                    payment_verified=True,
                )
                verified = True
            if verified:
                await self.redis.delete(capture_key(order_id))
            else:
                result.warning = PaymentUnverified()
                logger.warning(
                    "[booking-service] booking %s created from unverified payment signal (order %s)",
                    result.booking.booking_id,
                    order_id,
                )
            await self._publish_status(result.booking, "Payment received, booking confirmed")
        return result

    async def _create_once(self, order_id: str, draft, actor, paid: bool, verified: bool) -> ReconcileResult:
        existing = await self.machine.store.get_by_order_id(order_id)
        if existing is not None:
            if existing.customer_id != actor.id:
                raise Forbidden("Order belongs to another customer")
            return ReconcileResult(booking=existing, created=False)

        booking = self._draft_to_booking(draft, actor.id)
        booking.payment_order_id = order_id
        booking.payment_status = (PaymentStatus.PAID if paid else PaymentStatus.PENDING).value
        booking.payment_verified = verified
        try:
            created = await self.machine.create(booking, actor)
        except DuplicateOrder:
            winner = await self.machine.store.get_by_order_id(order_id)
            if winner is None:
                raise
            return ReconcileResult(booking=winner, created=False)
        return ReconcileResult(booking=created, created=True)

    # ---- gateway callbacks ----

    async def record_capture(self, order_id: str) -> Booking | None:
        booking = await self.machine.store.get_by_order_id(order_id)
        if booking is None:
            # client has not reconciled yet; remember the capture for that call
            await self.redis.set(capture_key(order_id), "1", ex=self.settings.payment_capture_ttl_seconds)
            logger.info("[booking-service] capture for order %s recorded ahead of booking", order_id)
            return None

        if booking.payment_status == PaymentStatus.PAID.value and booking.payment_verified:
            return booking

        booking = await self.machine.store.update_payment(
            booking.booking_id,
            payment_status=PaymentStatus.PAID.value,
            payment_verified=True,
        )
        await self._publish_status(booking, "Payment verified")
        return booking

    async def record_failure(self, order_id: str, reason: str | None = None) -> Booking | None:
        booking = await self.machine.store.get_by_order_id(order_id)
        if booking is None:
            logger.warning("[booking-service] payment failure for unknown order %s", order_id)
            return None
        if booking.payment_verified:
            return booking

        booking = await self.machine.store.update_payment(
            booking.booking_id,
            payment_status=PaymentStatus.FAILED.value,
        )
        await self._publish_status(booking, f"Payment failed: {reason or 'declined'}")
        return booking

    async def _publish_status(self, booking: Booking, message: str):
        await self.bus.publish(
            PAYMENT_STATUS,
            {
                "booking_id": booking.booking_id,
                "customer_id": booking.customer_id,
                "status": booking.payment_status,
                "verified": bool(booking.payment_verified),
                "message": message,
            },
        )
