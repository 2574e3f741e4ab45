import json
import logging

import aio_pika
from aio_pika import ExchangeType

from .config import EXCHANGE_NAME
from .events import PAYMENT_CAPTURED, PAYMENT_FAILED
from .rabbitmq import connect

logger = logging.getLogger(__name__)

QUEUE_NAME = "booking_service_payment_events"
ROUTING_KEYS = [PAYMENT_CAPTURED, PAYMENT_FAILED]

IDEMPOTENCY_TTL = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


class PaymentEventConsumer:
    """Gateway callbacks relayed by the payments service; the verified path."""

    def __init__(self, reconciler, redis_client):
        self.reconciler = reconciler
        self.redis = redis_client

    async def handle_payload(self, payload: dict):
        event_id = payload.get("event_id")
        event_type = payload.get("event_type")
        data = payload.get("data") or {}
        order_id = data.get("order_id")

        if not event_id or event_type not in set(ROUTING_KEYS) or not order_id:
            return

        # SET NX claims the event; redeliveries find the key and stop here
        if not await self.redis.set(processed_key(event_id), "1", ex=IDEMPOTENCY_TTL, nx=True):
            return

        try:
            if event_type == PAYMENT_CAPTURED:
                await self.reconciler.record_capture(order_id)
            elif event_type == PAYMENT_FAILED:
                await self.reconciler.record_failure(order_id, data.get("reason"))
        except Exception:
            # release the claim so a replay of this event is processed
            await self.redis.delete(processed_key(event_id))
            raise

    async def handle_message(self, message: aio_pika.IncomingMessage):
        async with message.process(requeue=False):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except ValueError:
                logger.warning("[booking-service] dropping malformed payment event")
                return
            await self.handle_payload(payload)

    async def start(self, rabbit_url: str | None):
        conn = await connect(rabbit_url)
        if conn is None:
            return None

        channel = await conn.channel()
        await channel.set_qos(prefetch_count=50)

        exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        queue = await channel.declare_queue(QUEUE_NAME, durable=True)
        for rk in ROUTING_KEYS:
            await queue.bind(exchange, routing_key=rk)

        await queue.consume(self.handle_message)
        logger.info("[booking-service] payment consumer started")
        return conn
