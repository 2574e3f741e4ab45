import logging
from collections import defaultdict
from typing import Awaitable, Callable

from .events import build_event, to_json

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]


class EventBus:
    """
    In-process publish/subscribe for domain events.

    Subscribers run in registration order after the state change has been
    committed. A failing subscriber is logged and skipped: notification and
    dispatch are downstream of the authoritative write and never undo it.
    Every event is also relayed to the RabbitMQ exchange (best effort).
    """

    def __init__(self, clock, publisher=None):
        self._clock = clock
        self._publisher = publisher
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler):
        self._handlers[event_type].append(handler)

    async def publish(self, event_type: str, data: dict) -> dict:
        event = build_event(event_type, data, occurred_at=self._clock.now())

        for handler in list(self._handlers.get(event_type, ())):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "[booking-service] subscriber %s failed for %s",
                    getattr(handler, "__qualname__", handler),
                    event_type,
                )

        if self._publisher is not None:
            await self._publisher.publish(event_type, to_json(event))

        return event
