import os
from dataclasses import dataclass
from decimal import Decimal

SERVICE_NAME = "booking-service"
EXCHANGE_NAME = "domain_events"


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


@dataclass
class Settings:
    database_url: str = "sqlite+aiosqlite:///./bookings.db"
    redis_url: str = "redis://localhost:6379/0"
    rabbit_url: str | None = None  # events disabled when unset

    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"

    commission_rate: Decimal = Decimal("0.10")

    otp_ttl_minutes: int = 10
    otp_max_attempts: int = 3
    otp_delivery_url: str | None = None
    otp_expose_code_on_failure: bool = True

    assignment_timeout_seconds: int = 300
    assignment_reject_cooldown_seconds: int = 1800
    payment_capture_ttl_seconds: int = 86400

    notification_dedup_bucket_seconds: int = 60
    notification_redelivery_seconds: int = 15

    background_tasks_enabled: bool = True
    create_tables: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("BOOKING_DB") or cls.database_url,
            redis_url=os.getenv("REDIS_URL") or cls.redis_url,
            rabbit_url=os.getenv("RABBIT_URL") or None,
            jwt_secret=os.getenv("JWT_SECRET") or cls.jwt_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM") or cls.jwt_algorithm,
            commission_rate=Decimal(os.getenv("PLATFORM_COMMISSION_RATE") or "0.10"),
            otp_ttl_minutes=_int("OTP_TTL_MINUTES", cls.otp_ttl_minutes),
            otp_max_attempts=_int("OTP_MAX_ATTEMPTS", cls.otp_max_attempts),
            otp_delivery_url=os.getenv("OTP_DELIVERY_URL") or None,
            otp_expose_code_on_failure=_flag("OTP_EXPOSE_CODE_ON_FAILURE", True),
            assignment_timeout_seconds=_int("ASSIGNMENT_TIMEOUT_SECONDS", cls.assignment_timeout_seconds),
            assignment_reject_cooldown_seconds=_int(
                "ASSIGNMENT_REJECT_COOLDOWN_SECONDS", cls.assignment_reject_cooldown_seconds
            ),
            payment_capture_ttl_seconds=_int("PAYMENT_CAPTURE_TTL_SECONDS", cls.payment_capture_ttl_seconds),
            notification_dedup_bucket_seconds=_int(
                "NOTIFICATION_DEDUP_BUCKET_SECONDS", cls.notification_dedup_bucket_seconds
            ),
            notification_redelivery_seconds=_int(
                "NOTIFICATION_REDELIVERY_SECONDS", cls.notification_redelivery_seconds
            ),
            background_tasks_enabled=_flag("BACKGROUND_TASKS_ENABLED", True),
            create_tables=_flag("CREATE_TABLES", False),
        )
