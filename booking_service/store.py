import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import Conflict, NotFound
from .models import Booking, BookingStatus, BookingStatusHistory, WorkerEarning

logger = logging.getLogger(__name__)


class DuplicateOrder(Exception):
    """Raised when a booking with the same payment_order_id already exists."""


class BookingStore:
    """
    Durable booking records.

    The only write primitive for lifecycle fields is compare_and_set: one
    conditional UPDATE whose rowcount decides which concurrent writer won.
    History and ledger rows ride in the same transaction as the update.
    """

    def __init__(self, session_factory, clock):
        self._sessions = session_factory
        self._clock = clock

    async def _load(self, db, booking_id: str) -> Booking | None:
        res = await db.execute(
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def get(self, booking_id: str) -> Booking:
        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    async def get_by_order_id(self, order_id: str) -> Booking | None:
        async with self._sessions() as db:
            res = await db.execute(select(Booking).where(Booking.payment_order_id == order_id))
            return res.scalar_one_or_none()

    async def insert(self, booking: Booking, history: BookingStatusHistory) -> Booking:
        async with self._sessions() as db:
            db.add(booking)
            try:
                await db.flush()
                db.add(history)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateOrder(str(e.orig)) from e
            return await self._load(db, booking.booking_id)

    async def compare_and_set(
        self,
        booking_id: str,
        expected: BookingStatus,
        values: dict,
        *,
        where=(),
        history: BookingStatusHistory | None = None,
        earning: WorkerEarning | None = None,
    ) -> Booking:
        stmt = (
            update(Booking)
            .where(Booking.booking_id == booking_id, Booking.status == expected.value, *where)
            .values(**values, updated_at=self._clock.now())
            .execution_options(synchronize_session=False)
        )

        async with self._sessions() as db:
            res = await db.execute(stmt)
            if res.rowcount != 1:
                await db.rollback()
                current = await self._load(db, booking_id)
                if current is None:
                    raise NotFound("Booking not found")
                raise Conflict(
                    f"Booking {booking_id} is {current.status}, expected {expected.value}",
                    current_status=current.booking_status,
                )

            if history is not None:
                db.add(history)
            if earning is not None:
                db.add(earning)
            await db.commit()
            return await self._load(db, booking_id)

    async def update_payment(self, booking_id: str, **values) -> Booking:
        """Payment fields are not lifecycle state; plain update."""
        async with self._sessions() as db:
            await db.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id)
                .values(**values, updated_at=self._clock.now())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            booking = await self._load(db, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    async def with_pending_otp_before(self, cutoff) -> list[Booking]:
        async with self._sessions() as db:
            res = await db.execute(
                select(Booking).where(
                    Booking.status == BookingStatus.IN_PROGRESS.value,
                    Booking.otp_expires_at.is_not(None),
                    Booking.otp_expires_at < cutoff,
                )
            )
            return list(res.scalars().all())

    async def earnings(self, worker_id: str) -> list[WorkerEarning]:
        async with self._sessions() as db:
            res = await db.execute(
                select(WorkerEarning)
                .where(WorkerEarning.worker_id == worker_id)
                .order_by(WorkerEarning.id)
            )
            return list(res.scalars().all())
