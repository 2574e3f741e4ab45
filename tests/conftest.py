import json
from datetime import date
from decimal import Decimal

from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
import pytest

from booking_service.clock import FrozenClock
from booking_service.config import Settings
from booking_service.context import ServiceContext
from booking_service.errors import DeliveryFailure
from booking_service.schemas import CreateBookingRequest


class StubOtpChannel:
    """Collects codes instead of emailing them; can be switched to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, customer_id, booking_id, code, expires_at):
        if self.fail:
            raise DeliveryFailure("mail relay down")
        self.sent.append({"customer_id": customer_id, "booking_id": booking_id, "code": code})


class RecordingPublisher:
    def __init__(self):
        self.published = []

    async def connect(self):
        pass

    async def publish(self, routing_key, body):
        self.published.append((routing_key, json.loads(body)))

    async def close(self):
        pass

    def routing_keys(self):
        return [rk for rk, _ in self.published]


class FakeSocket:
    def __init__(self, broken: bool = False):
        self.broken = broken
        self.messages = []

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.messages.append(message)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        background_tasks_enabled=False,
        create_tables=True,
    )


@pytest.fixture
def build_ctx(settings):
    """Async factory; call it inside the test's event loop."""

    async def _build(**overrides):
        overrides.setdefault("clock", FrozenClock())
        overrides.setdefault(
            "redis_client",
            FakeRedis(server=FakeServer(), decode_responses=True),
        )
        overrides.setdefault("otp_channel", StubOtpChannel())
        overrides.setdefault("publisher", RecordingPublisher())
        ctx = ServiceContext(settings, **overrides)
        await ctx.start()
        return ctx

    return _build


@pytest.fixture
def make_draft():
    def _draft(**overrides):
        data = {
            "service_type": "Plumbing",
            "service_title": "Fix kitchen sink",
            "scheduled_date": date(2025, 1, 3),
            "scheduled_time": "10:00",
            "address": {
                "line1": "12 MG Road",
                "city": "Bengaluru",
                "state": "KA",
                "pincode": "560001",
            },
            "amount": Decimal("500.00"),
            "payment_method": "cod",
        }
        data.update(overrides)
        return CreateBookingRequest(**data)

    return _draft


@pytest.fixture
def in_progress(make_draft):
    """Drives a fresh booking to InProgress for the given customer and worker."""

    async def _run(ctx, customer, worker):
        await ctx.dispatcher.upsert_worker(worker.id, ["plumbing"], True, True)
        booking = await ctx.payments.create_booking(make_draft(), customer)
        await ctx.dispatcher.accept(booking.booking_id, worker, "Pending")
        return await ctx.machine.run(booking.booking_id, worker, "start")

    return _run
