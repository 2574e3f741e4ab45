import logging

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0


class OtpChannel:
    async def send(self, customer_id: str, booking_id: str, code: str, expires_at) -> None:
        raise NotImplementedError


class HttpOtpChannel(OtpChannel):
    """
    Hands the completion code to the email/SMS gateway over HTTP. Any failure
    (unconfigured URL, open breaker, timeout, non-2xx) is a DeliveryFailure.
    """

    def __init__(self, url: str | None, redis_client, clock, timeout: float = DEFAULT_TIMEOUT, transport=None):
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.breaker = CircuitBreaker(redis_client, "otp-delivery", clock)

    async def send(self, customer_id: str, booking_id: str, code: str, expires_at) -> None:
        if not self.url:
            raise DeliveryFailure("OTP delivery channel not configured")

        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise DeliveryFailure(str(e))

        payload = {
            "recipient_id": customer_id,
            "template": "booking_completion_code",
            "params": {
                "booking_id": booking_id,
                "code": code,
                "expires_at": expires_at.isoformat(),
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
                resp.raise_for_status()
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            raise DeliveryFailure(f"Timeout calling OTP gateway: {self.url}")
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            raise DeliveryFailure(f"OTP gateway error: {e}")

        await self.breaker.record_success()
