CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed breaker in front of an outbound channel, shared by every
    booking-service instance.

    CLOSED counts failures; OPEN rejects calls for reset_timeout_seconds;
    HALF_OPEN lets a single trial call through and reopens if it fails.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        clock,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 30,
        failure_window_seconds: int = 60,
    ):
        self.redis = redis_client
        self.name = name
        self.clock = clock
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        return await self.redis.get(self._key("state")) or CLOSED

    async def allow_request(self) -> None:
        state = await self.state()
        if state == CLOSED:
            return

        if state == OPEN:
            opened_at = await self.redis.get(self._key("opened_at"))
            if not opened_at:
                await self.reset()
                return
            if self.clock.now().timestamp() - float(opened_at) < self.reset_timeout_seconds:
                raise CircuitBreakerOpen(f"{self.name} unavailable, retry later")
            await self.redis.set(self._key("state"), HALF_OPEN)

        # HALF_OPEN: one caller claims the trial call, the rest wait for its outcome
        claimed = await self.redis.set(self._key("trial"), "1", nx=True, ex=self.reset_timeout_seconds)
        if not claimed:
            raise CircuitBreakerOpen(f"{self.name} trial call in flight, retry later")

    async def record_success(self) -> None:
        await self.reset()

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.trip()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self.trip()

    async def trip(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), OPEN, ex=ttl)
        pipe.set(self._key("opened_at"), str(self.clock.now().timestamp()), ex=ttl)
        pipe.delete(self._key("trial"))
        await pipe.execute()

    async def reset(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), CLOSED, ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        pipe.delete(self._key("trial"))
        await pipe.execute()
