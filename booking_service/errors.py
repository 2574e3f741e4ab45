class BookingError(Exception):
    """Base for every error the booking engine reports to callers."""

    status_code = 400
    code = "booking_error"
    expose_message = True

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()

    @property
    def public_message(self) -> str:
        if self.expose_message:
            return self.message
        return (self.__class__.__doc__ or self.code).strip()


class ValidationError(BookingError):
    """Malformed booking input."""

    status_code = 422
    code = "validation_error"


class NotFound(BookingError):
    """Booking not found."""

    status_code = 404
    code = "not_found"


class Forbidden(BookingError):
    """Actor is not allowed to perform this action."""

    status_code = 403
    code = "forbidden"


class Conflict(BookingError):
    """Booking was changed by another actor."""

    status_code = 409
    code = "conflict"

    def __init__(self, message: str | None = None, current_status=None):
        super().__init__(message)
        self.current_status = current_status


class InvalidTransition(BookingError):
    """Request could not be processed."""

    status_code = 400
    code = "invalid_transition"
    expose_message = False


class OtpExpired(BookingError):
    """Completion code expired; request a new one."""

    code = "otp_expired"


class OtpMismatch(BookingError):
    """Completion code does not match."""

    code = "otp_mismatch"


class OtpAttemptsExceeded(BookingError):
    """Too many wrong completion codes; request a new one."""

    code = "otp_attempts_exceeded"


class PaymentUnverified(BookingError):
    """Payment confirmed by the client only; pending gateway verification."""

    status_code = 202
    code = "payment_unverified"


class DeliveryFailure(BookingError):
    """Delivery channel unavailable."""

    status_code = 503
    code = "delivery_failure"
