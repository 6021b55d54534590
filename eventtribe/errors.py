class PaymentInitiationError(Exception):
    """The push payment could not be started; message is shown to the payer."""


class MalformedCallback(Exception):
    """Provider callback without a resolvable booking id."""


class CallbackAuthError(Exception):
    pass


class CheckInError(Exception):
    reason_code = "REJECTED"
    message = "Check-in rejected"

    def __init__(self, message: str | None = None, user_name: str | None = None, booking_id: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.user_name = user_name
        self.booking_id = booking_id


class InvalidCodeFormat(CheckInError):
    reason_code = "INVALID_CODE_FORMAT"
    message = "Invalid QR code format"


class UnknownOrMismatchedBooking(CheckInError):
    reason_code = "UNKNOWN_OR_MISMATCHED_BOOKING"
    message = "Invalid booking or wrong event"


class PaymentNotCompleted(CheckInError):
    reason_code = "PAYMENT_NOT_COMPLETED"
    message = "Payment not completed"


class AlreadyCheckedIn(CheckInError):
    reason_code = "ALREADY_CHECKED_IN"
    message = "Ticket already used for check-in"
