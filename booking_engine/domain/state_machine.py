# booking_engine/domain/state_machine.py

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Set

from booking_engine.domain.exceptions import (
    CancellationNotAllowedError,
    InvalidStateTransitionError,
)


class BookingStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class _StateMachine:
    """
    Table-driven lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    _STATUS_TYPE: type = Enum
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(_StateMachine):
    """
    Booking lifecycle.

    A booking is created Pending and only the payment confirmation
    handler may move it to Confirmed. Customers cancel Confirmed
    bookings; an unpaid Pending booking is simply never confirmed.
    """

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
    }

    @classmethod
    def ensure_cancellable(
        cls,
        status: BookingStatus,
        event_starts_at: datetime,
        now: datetime,
        window: timedelta = timedelta(hours=24),
    ) -> None:
        """
        Raises CancellationNotAllowedError unless the booking is Confirmed
        and the event starts more than `window` from `now`.
        """
        if not cls.can_transition(status, BookingStatus.CANCELLED):
            raise CancellationNotAllowedError(
                f"Only confirmed bookings can be cancelled (current status: {status.value})."
            )
        if event_starts_at <= now + window:
            hours = int(window.total_seconds() // 3600)
            raise CancellationNotAllowedError(
                f"Bookings cannot be cancelled within {hours} hours of the event."
            )


class PaymentStateMachine(_StateMachine):
    """
    Payment lifecycle. Failed -> Completed covers a customer retrying
    the same gateway order after a declined attempt.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.FAILED: {
            PaymentStatus.COMPLETED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
    }
