import asyncio
import logging

import redis.asyncio as redis

from .bus import EventBus
from .clock import Clock
from .config import Settings
from .consumer import PaymentEventConsumer
from .db import create_tables, get_engine, get_session
from .delivery import HttpOtpChannel
from .dispatcher import AssignmentDispatcher, escalation_loop
from .notifications import ConnectionManager, NotificationBroadcaster, redelivery_loop
from .otp import OtpCompletionService, generate_code, otp_reaper_loop
from .payments import PaymentReconciler
from .rabbitmq import RabbitPublisher
from .state_machine import BookingStateMachine
from .store import BookingStore

logger = logging.getLogger(__name__)


class ServiceContext:
    """
    Everything a request or background loop needs, built once per process and
    handed around explicitly. Tests build one with a frozen clock, fakeredis
    and a stub OTP channel.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock | None = None,
        redis_client=None,
        otp_channel=None,
        publisher=None,
        code_generator=generate_code,
    ):
        self.settings = settings
        self.clock = clock or Clock()

        self.engine = get_engine(settings.database_url)
        self.sessions = get_session(self.engine)
        self.redis = redis_client or redis.from_url(settings.redis_url, decode_responses=True)

        self.publisher = publisher or RabbitPublisher(settings.rabbit_url)
        self.bus = EventBus(self.clock, self.publisher)

        self.store = BookingStore(self.sessions, self.clock)
        self.machine = BookingStateMachine(self.store, self.bus, self.clock)

        self.connections = ConnectionManager()
        self.notifications = NotificationBroadcaster(
            self.sessions, self.connections, self.bus, self.clock, settings
        )
        self.dispatcher = AssignmentDispatcher(
            self.sessions, self.redis, self.machine, self.bus, self.clock, settings
        )
        self.otp = OtpCompletionService(
            self.machine,
            otp_channel or HttpOtpChannel(settings.otp_delivery_url, self.redis, self.clock),
            self.clock,
            settings,
            code_generator=code_generator,
        )
        self.payments = PaymentReconciler(self.machine, self.redis, self.bus, settings)
        self.payment_consumer = PaymentEventConsumer(self.payments, self.redis)

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._consumer_conn = None

    async def start(self):
        if self.settings.create_tables:
            await create_tables(self.engine)

        try:
            await self.publisher.connect()
        except Exception as e:
            logger.warning("[booking-service] RabbitMQ connect failed at startup; continuing without events: %s", e)

        try:
            self._consumer_conn = await self.payment_consumer.start(self.settings.rabbit_url)
        except Exception as e:
            self._consumer_conn = None
            logger.warning("[booking-service] payment consumer failed to start: %s", e)

        if self.settings.background_tasks_enabled:
            self._tasks = [
                asyncio.create_task(escalation_loop(self.dispatcher, self._stop_event)),
                asyncio.create_task(otp_reaper_loop(self.otp, self._stop_event)),
                asyncio.create_task(
                    redelivery_loop(
                        self.notifications,
                        self._stop_event,
                        interval=self.settings.notification_redelivery_seconds,
                    )
                ),
            ]

    async def close(self):
        self._stop_event.set()
        for task in self._tasks:
            try:
                await task
            except Exception:
                logger.exception("[booking-service] background task ended with error")
        self._tasks = []

        if self._consumer_conn and not self._consumer_conn.is_closed:
            await self._consumer_conn.close()
        await self.publisher.close()
        await self.redis.aclose()
        await self.engine.dispose()
