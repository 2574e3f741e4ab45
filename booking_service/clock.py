from datetime import datetime, timedelta, timezone


def as_utc(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """Manually advanced clock used by tests and replay tooling."""

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) if start else datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
