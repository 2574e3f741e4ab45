import asyncio
from datetime import datetime, timezone

import pytest

from booking_service.errors import Forbidden, NotFound
from booking_service.notifications import ConnectionManager, dedup_key
from booking_service.rbac import Role
from booking_service.security import Actor
from conftest import FakeSocket

CUSTOMER = Actor("cust-1", Role.CUSTOMER)
WORKER = Actor("worker-1", Role.WORKER)
ADMIN = Actor("admin-1", Role.ADMIN)
OTHER_ADMIN = Actor("admin-2", Role.ADMIN)


def test_dedup_key_collides_within_bucket():
    t0 = datetime(2025, 1, 1, 9, 0, 5, tzinfo=timezone.utc)
    t1 = datetime(2025, 1, 1, 9, 0, 50, tzinfo=timezone.utc)
    t2 = datetime(2025, 1, 1, 9, 1, 5, tzinfo=timezone.utc)

    assert dedup_key("booking_accepted", "msg", t0) == dedup_key("booking_accepted", "msg", t1)
    assert dedup_key("booking_accepted", "msg", t0) != dedup_key("booking_accepted", "msg", t2)
    assert dedup_key("booking_accepted", "msg", t0) != dedup_key("booking_accepted", "other", t0)
    # naive timestamps read back from sqlite land in the same bucket
    assert dedup_key("x", "m", t0.replace(tzinfo=None)) == dedup_key("x", "m", t0)


def test_connection_manager_drops_broken_sockets():
    async def scenario():
        manager = ConnectionManager()
        good, bad = FakeSocket(), FakeSocket(broken=True)
        manager.connect("cust-1", good)
        manager.connect("cust-1", bad)

        assert await manager.send("cust-1", {"event": "ping"}) is True
        assert good.messages == [{"event": "ping"}]
        assert manager.is_connected("cust-1")

        manager.disconnect("cust-1", good)
        assert not manager.is_connected("cust-1")
        assert await manager.send("cust-1", {"event": "ping"}) is False

    asyncio.run(scenario())


def test_accept_notifies_customer_live_and_persists(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        socket = FakeSocket()
        ctx.connections.connect(CUSTOMER.id, socket)

        await ctx.dispatcher.upsert_worker(WORKER.id, ["plumbing"], True, True)
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        await ctx.dispatcher.accept(booking.booking_id, WORKER, "Pending")

        assert [m["event"] for m in socket.messages] == ["notification"]
        pushed = socket.messages[0]["data"]
        assert pushed["type"] == "booking_accepted"
        assert pushed["booking_id"] == booking.booking_id

        unread = await ctx.notifications.unread(CUSTOMER)
        assert [n.dedup_key for n in unread] == [pushed["dedup_key"]]
        assert unread[0].delivered_at is not None
        await ctx.close()

    asyncio.run(scenario())


def test_redelivery_pushes_undelivered_once(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        await ctx.dispatcher.upsert_worker(WORKER.id, ["plumbing"], True, True)
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        await ctx.dispatcher.accept(booking.booking_id, WORKER, "Pending")

        assert await ctx.notifications.redeliver_pending() == 0

        socket = FakeSocket()
        ctx.connections.connect(CUSTOMER.id, socket)
        assert await ctx.notifications.redeliver_pending() == 1
        assert await ctx.notifications.redeliver_pending() == 0
        assert socket.messages[0]["data"]["type"] == "booking_accepted"
        await ctx.close()

    asyncio.run(scenario())


def test_mark_read_hides_notification_and_checks_owner(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        await ctx.dispatcher.upsert_worker(WORKER.id, ["plumbing"], True, True)
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        await ctx.dispatcher.accept(booking.booking_id, WORKER, "Pending")

        notification = (await ctx.notifications.unread(CUSTOMER))[0]
        with pytest.raises(Forbidden):
            await ctx.notifications.mark_read(notification.id, WORKER)
        with pytest.raises(NotFound):
            await ctx.notifications.mark_read(99999, CUSTOMER)

        read = await ctx.notifications.mark_read(notification.id, CUSTOMER)
        assert read.read is True
        assert await ctx.notifications.unread(CUSTOMER) == []
        await ctx.close()

    asyncio.run(scenario())


def test_customer_cancel_notifies_worker_and_admins_not_customer(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        await ctx.dispatcher.upsert_worker(WORKER.id, ["plumbing"], True, True)
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        await ctx.dispatcher.accept(booking.booking_id, WORKER, "Pending")

        await ctx.machine.run(booking.booking_id, CUSTOMER, "cancel")

        customer_types = [n.type for n in await ctx.notifications.unread(CUSTOMER)]
        worker_types = [n.type for n in await ctx.notifications.unread(WORKER)]
        admin_types = [n.type for n in await ctx.notifications.unread(ADMIN)]
        assert "booking_cancelled" not in customer_types
        assert "booking_cancelled" in worker_types
        assert admin_types == ["booking_cancelled"]
        await ctx.close()

    asyncio.run(scenario())


def test_admin_notifications_are_shared_by_all_admins(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        await ctx.machine.run(booking.booking_id, ADMIN, "cancel")

        first = await ctx.notifications.unread(ADMIN)
        second = await ctx.notifications.unread(OTHER_ADMIN)
        assert [n.id for n in first] == [n.id for n in second]

        # a non-admin whose subject happens to be the shared inbox id
        for impostor in (Actor("admins", Role.CUSTOMER), Actor("admins", Role.WORKER)):
            with pytest.raises(Forbidden):
                await ctx.notifications.mark_read(first[0].id, impostor)
        assert [n.id for n in await ctx.notifications.unread(ADMIN)] == [n.id for n in first]

        await ctx.notifications.mark_read(first[0].id, OTHER_ADMIN)
        assert await ctx.notifications.unread(ADMIN) == []
        await ctx.close()

    asyncio.run(scenario())


def test_replay_unread_on_connect(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()
        await ctx.dispatcher.upsert_worker(WORKER.id, ["plumbing"], True, True)
        await ctx.payments.create_booking(make_draft(), CUSTOMER)

        socket = FakeSocket()
        ctx.connections.connect(WORKER.id, socket)
        assert await ctx.notifications.replay_unread(WORKER) == 1
        assert socket.messages[0]["data"]["type"] == "new_booking_available"
        await ctx.close()

    asyncio.run(scenario())


def test_failing_subscriber_does_not_undo_transition(build_ctx, make_draft):
    async def scenario():
        ctx = await build_ctx()

        async def boom(event):
            raise RuntimeError("subscriber down")

        ctx.bus.subscribe("booking.transitioned", boom)
        booking = await ctx.payments.create_booking(make_draft(), CUSTOMER)
        cancelled = await ctx.machine.run(booking.booking_id, CUSTOMER, "cancel")

        assert cancelled.status == "Cancelled"
        assert "booking.transitioned" in ctx.publisher.routing_keys()
        await ctx.close()

    asyncio.run(scenario())
