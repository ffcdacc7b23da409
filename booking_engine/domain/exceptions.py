from enum import Enum


class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking engine.
    """

    code = "BOOKING_ERROR"
    user_message = "Your request could not be completed. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class InvalidStateTransitionError(BookingEngineError):
    """
    Raised when an illegal booking or payment state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class CheckoutValidationError(BookingEngineError):
    """Raised when the event, customer or order cannot be checked out."""

    code = "VALIDATION_FAILED"
    user_message = "Invalid booking request. Please check your selections and try again."


class InvalidSelectionError(CheckoutValidationError):
    """Raised for an unknown, inactive or out-of-limits tier selection."""

    code = "INVALID_SELECTION"


class DiscountRejection(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    LIMIT_REACHED = "LIMIT_REACHED"
    EVENT_MISMATCH = "EVENT_MISMATCH"


_DISCOUNT_MESSAGES = {
    DiscountRejection.NOT_FOUND: "Invalid coupon code.",
    DiscountRejection.INACTIVE: "This coupon is inactive.",
    DiscountRejection.EXPIRED: "This coupon is expired.",
    DiscountRejection.LIMIT_REACHED: "This coupon has reached its usage limit.",
    DiscountRejection.EVENT_MISMATCH: "This coupon is not valid for the selected event.",
}


class DiscountError(BookingEngineError):
    """Raised when a discount code cannot be applied."""

    code = "INVALID_DISCOUNT"

    def __init__(self, reason: DiscountRejection):
        self.reason = reason
        super().__init__(_DISCOUNT_MESSAGES[reason])


class InventoryExhaustedError(BookingEngineError):
    """Raised when a tier has fewer tickets left than requested."""

    code = "INVENTORY_EXHAUSTED"
    user_message = "Not enough tickets are left for your selection. Please choose a different quantity or tier."


class PaymentGatewayError(BookingEngineError):
    """Raised when the payment provider rejects or fails a call."""

    code = "GATEWAY_FAILURE"
    user_message = "An error occurred while processing your booking. Please try again."


class BookingNotFoundError(BookingEngineError):
    code = "BOOKING_NOT_FOUND"
    user_message = "Booking not found."


class CancellationNotAllowedError(BookingEngineError):
    """Raised when a booking is not confirmed or the event starts too soon."""

    code = "CANCELLATION_NOT_ALLOWED"
    user_message = "This booking can no longer be cancelled."


class QRGenerationError(BookingEngineError):
    code = "QR_FAILURE"


class NotificationError(BookingEngineError):
    code = "NOTIFICATION_FAILURE"
