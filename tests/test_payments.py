import asyncio
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from booking_service.consumer import PaymentEventConsumer, processed_key
from booking_service.errors import Forbidden, PaymentUnverified
from booking_service.models import Booking, PaymentStatus
from booking_service.payments import capture_key, worker_share
from booking_service.rbac import Role
from booking_service.security import Actor
from conftest import FakeSocket

CUSTOMER = Actor("cust-1", Role.CUSTOMER)
OTHER_CUSTOMER = Actor("cust-2", Role.CUSTOMER)
WORKER = Actor("worker-1", Role.WORKER)


async def _count_orders(ctx, order_id):
    async with ctx.sessions() as db:
        res = await db.execute(select(func.count()).select_from(Booking).where(Booking.payment_order_id == order_id))
        return res.scalar_one()


@pytest.mark.parametrize(
    "amount,rate,expected",
    [
        ("500.00", "0.10", "450.00"),
        ("999.99", "0.10", "899.99"),
        ("100.05", "0.15", "85.04"),
        ("250.00", "0", "250.00"),
    ],
)
def test_worker_share(amount, rate, expected):
    assert worker_share(Decimal(amount), Decimal(rate)) == Decimal(expected)


def test_cod_booking_is_pending_payment(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)

        assert booking.payment_method == "cod"
        assert booking.payment_status == PaymentStatus.PENDING.value
        assert booking.payment_verified is False
        assert booking.worker_payment == Decimal("450.00")
        await ctx.close()

    asyncio.run(scenario())


def test_only_customers_create_bookings(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        with pytest.raises(Forbidden):
            await ctx.payments.create_booking(make_draft(), WORKER)
        with pytest.raises(Forbidden):
            await ctx.payments.reconcile("order_1", make_draft(payment_method="online"), WORKER)
        await ctx.close()

    asyncio.run(scenario())


def test_reconcile_twice_returns_same_booking(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        draft = make_draft(payment_method="online")

        first = await ctx.payments.reconcile("order_123", draft, CUSTOMER)
        second = await ctx.payments.reconcile("order_123", draft, CUSTOMER)

        assert first.created is True
        assert second.created is False
        assert second.booking.booking_id == first.booking.booking_id
        assert second.warning is None
        assert await _count_orders(ctx, "order_123") == 1
        await ctx.close()

    asyncio.run(scenario())


def test_concurrent_reconcile_creates_one_booking(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        draft = make_draft(payment_method="online")

        results = await asyncio.gather(
            ctx.payments.reconcile("order_777", draft, CUSTOMER),
            ctx.payments.reconcile("order_777", draft, CUSTOMER),
        )

        assert {r.booking.booking_id for r in results} == {results[0].booking.booking_id}
        assert sorted(r.created for r in results) == [False, True]
        assert await _count_orders(ctx, "order_777") == 1
        await ctx.close()

    asyncio.run(scenario())


def test_unverified_reconcile_warns_then_capture_verifies(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        socket = FakeSocket()
        ctx.connections.connect(CUSTOMER.id, socket)

        result = await ctx.payments.reconcile("order_9", make_draft(payment_method="online"), CUSTOMER)
        assert result.created is True
        assert isinstance(result.warning, PaymentUnverified)
        assert result.booking.payment_status == PaymentStatus.PAID.value
        assert result.booking.payment_verified is False
        assert "payment-status" in [m["event"] for m in socket.messages]

        verified = await ctx.payments.record_capture("order_9")
        assert verified.booking_id == result.booking.booking_id
        assert verified.payment_verified is True
        await ctx.close()

    asyncio.run(scenario())


def test_capture_before_reconcile_marks_booking_verified(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()

        assert await ctx.payments.record_capture("order_42") is None
        assert await ctx.redis.exists(capture_key("order_42"))

        result = await ctx.payments.reconcile("order_42", make_draft(payment_method="online"), CUSTOMER)
        assert result.created is True
        assert result.warning is None
        assert result.booking.payment_verified is True
        assert not await ctx.redis.exists(capture_key("order_42"))
        await ctx.close()

    asyncio.run(scenario())


def test_capture_arriving_during_reconcile_insert_verifies_booking(build_ctx, make_draft, monkeypatch):
    async def scenario():
        ctx = await build_ctx()
        real_create = ctx.machine.create

        async def create_after_capture(booking, actor):
            # gateway callback lands after the capture check, before the row exists
            assert await ctx.payments.record_capture("order_race") is None
            return await real_create(booking, actor)

        monkeypatch.setattr(ctx.machine, "create", create_after_capture)
        result = await ctx.payments.reconcile("order_race", make_draft(payment_method="online"), CUSTOMER)

        assert result.created is True
        assert result.warning is None
        assert result.booking.payment_status == PaymentStatus.PAID.value
        assert result.booking.payment_verified is True
        assert not await ctx.redis.exists(capture_key("order_race"))

        stored = await ctx.store.get(result.booking.booking_id)
        assert stored.payment_verified is True
        await ctx.close()

    asyncio.run(scenario())


def test_cod_draft_with_order_id_is_never_paid(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        draft = make_draft(payment_method="cod", payment_confirmed=True, order_id="order_cod_1")

        booking = await ctx.payments.create_booking(draft, CUSTOMER)
        assert booking.payment_status == PaymentStatus.PENDING.value
        assert booking.payment_verified is False
        await ctx.close()

    asyncio.run(scenario())


def test_order_of_another_customer_is_forbidden(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        draft = make_draft(payment_method="online")
        await ctx.payments.reconcile("order_5", draft, CUSTOMER)

        with pytest.raises(Forbidden):
            await ctx.payments.reconcile("order_5", draft, OTHER_CUSTOMER)
        await ctx.close()

    asyncio.run(scenario())


def test_create_with_order_id_is_idempotent(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        draft = make_draft(payment_method="online", payment_confirmed=True, order_id="order_sdk_1")

        first = await ctx.payments.create_booking(draft, CUSTOMER)
        second = await ctx.payments.create_booking(draft, CUSTOMER)

        assert first.booking_id == second.booking_id
        assert first.payment_verified is True
        assert await _count_orders(ctx, "order_sdk_1") == 1
        await ctx.close()

    asyncio.run(scenario())


def test_payment_failure_marks_unverified_booking_failed(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        result = await ctx.payments.reconcile("order_bad", make_draft(payment_method="online"), CUSTOMER)

        failed = await ctx.payments.record_failure("order_bad", "insufficient funds")
        assert failed.booking_id == result.booking.booking_id
        assert failed.payment_status == PaymentStatus.FAILED.value

        messages = [n.message for n in await ctx.notifications.unread(CUSTOMER) if n.type == "payment_status"]
        assert "Payment failed: insufficient funds" in messages
        assert await ctx.payments.record_failure("order_unknown") is None
        await ctx.close()

    asyncio.run(scenario())


class CountingReconciler:
    def __init__(self, fail_first=False):
        self.captures = []
        self.failures = []
        self.fail_first = fail_first

    async def record_capture(self, order_id):
        if self.fail_first:
            self.fail_first = False
            raise RuntimeError("database unavailable")
        self.captures.append(order_id)

    async def record_failure(self, order_id, reason=None):
        self.failures.append((order_id, reason))


def _event(event_id, event_type, order_id, **extra):
    return {"event_id": event_id, "event_type": event_type, "data": {"order_id": order_id, **extra}}


def test_consumer_handles_each_event_once():
    from fakeredis import FakeServer
    from fakeredis.aioredis import FakeRedis

    async def scenario():
        redis_client = FakeRedis(server=FakeServer(), decode_responses=True)
        reconciler = CountingReconciler()
        consumer = PaymentEventConsumer(reconciler, redis_client)

        event = _event("evt-1", "payment.captured", "order_1")
        await consumer.handle_payload(event)
        await consumer.handle_payload(event)
        await consumer.handle_payload(_event("evt-2", "payment.failed", "order_2", reason="declined"))
        await consumer.handle_payload(_event("evt-3", "payment.refunded", "order_3"))
        await consumer.handle_payload({"event_type": "payment.captured", "data": {"order_id": "x"}})

        assert reconciler.captures == ["order_1"]
        assert reconciler.failures == [("order_2", "declined")]
        assert await redis_client.exists(processed_key("evt-1"))

    asyncio.run(scenario())


def test_consumer_releases_claim_when_handling_fails():
    from fakeredis import FakeServer
    from fakeredis.aioredis import FakeRedis

    async def scenario():
        redis_client = FakeRedis(server=FakeServer(), decode_responses=True)
        reconciler = CountingReconciler(fail_first=True)
        consumer = PaymentEventConsumer(reconciler, redis_client)
        event = _event("evt-9", "payment.captured", "order_9")

        with pytest.raises(RuntimeError):
            await consumer.handle_payload(event)
        assert not await redis_client.exists(processed_key("evt-9"))

        await consumer.handle_payload(event)
        assert reconciler.captures == ["order_9"]

    asyncio.run(scenario())


def test_consumer_drives_real_reconciler(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        result = await ctx.payments.reconcile("order_live", make_draft(payment_method="online"), CUSTOMER)
        assert result.booking.payment_verified is False

        body = json.dumps(_event("evt-live", "payment.captured", "order_live"))
        await ctx.payment_consumer.handle_payload(json.loads(body))

        fresh = await ctx.store.get(result.booking.booking_id)
        assert fresh.payment_verified is True
        await ctx.close()

    asyncio.run(scenario())
