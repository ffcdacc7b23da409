import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from booking_engine.application.ports import PaymentGateway
from booking_engine.domain.clock import as_utc, utcnow
from booking_engine.domain.exceptions import (
    BookingNotFoundError,
    CancellationNotAllowedError,
    CheckoutValidationError,
)
from booking_engine.domain.pricing import effective_max_quantity
from booking_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from booking_engine.infrastructure.config import Settings
from booking_engine.infrastructure.db.models import Booking
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.event_repository import EventRepository
from booking_engine.infrastructure.repositories.tier_repository import TierRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierOption:
    tier_id: str
    category: str
    description: str | None
    price: Decimal
    available: int
    max_quantity: int


class BookingService:
    """Application service for booking lookups, cancellation and refunds."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        gateway: PaymentGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)
        self.tier_repository = TierRepository(db)

    def get_checkout_options(self, event_id: str) -> list[TierOption]:
        event = self.event_repository.get_by_id(event_id)
        if not event or not event.is_bookable:
            raise CheckoutValidationError("This event is not available for booking.")

        options = []
        for tier in self.tier_repository.list_for_event(event_id, active_only=True):
            available = self.tier_repository.availability(tier.id)
            limit = effective_max_quantity(tier, self.settings.max_tickets_per_tier)
            options.append(
                TierOption(
                    tier_id=tier.id,
                    category=tier.category,
                    description=tier.description,
                    price=tier.price,
                    available=available,
                    max_quantity=available if limit is None else min(limit, available),
                )
            )
        return options

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, with_details=True)
        if not booking:
            raise BookingNotFoundError()
        return booking

    def list_customer_bookings(self, customer_id: str) -> list[Booking]:
        return self.booking_repository.list_for_customer(customer_id)

    def cancel_booking(self, booking_id: str, customer_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, with_details=True)

        # Someone else's booking looks exactly like a missing one.
        if not booking or booking.customer_id != customer_id:
            raise BookingNotFoundError()

        now = self.clock()
        BookingStateMachine.ensure_cancellable(
            booking.status,
            as_utc(booking.event.starts_at),
            now,
            self.settings.cancellation_window,
        )

        self._transition(booking, BookingStatus.CANCELLED, cancelled_at=now, updated_at=now)
        self.booking_repository.invalidate_tickets(booking.id, used_at=now)
        self.db.commit()

        logger.info("Booking %s cancelled by customer %s", booking.id, customer_id)
        return self.booking_repository.get_by_id(booking.id, with_details=True)

    def refund_booking(self, booking_id: str) -> bool:
        if self.gateway is None:
            raise RuntimeError("A payment gateway is required to refund bookings")

        booking = self.booking_repository.get_by_id(booking_id, with_details=True)
        if not booking:
            raise BookingNotFoundError()

        if booking.status is not BookingStatus.CANCELLED:
            logger.info("Refund refused for booking %s in status %s", booking_id, booking.status.value)
            return False

        payment = booking.payment
        if payment is None or not PaymentStateMachine.can_transition(
            payment.status, PaymentStatus.REFUNDED
        ):
            logger.info("Refund refused for booking %s: payment not completed", booking_id)
            return False

        # Claim the payment before talking to the gateway; only one request may refund it.
        claimed = self.booking_repository.transition_payment_status(
            payment.id,
            {PaymentStatus.COMPLETED},
            PaymentStatus.REFUNDED,
            refunded_at=self.clock(),
        )
        self.db.commit()
        if not claimed:
            logger.info("Refund for booking %s already claimed by another request", booking_id)
            return False

        try:
            refunded = self.gateway.refund(payment.transaction_id)
        except Exception:
            self._release_refund_claim(payment.id)
            raise

        if not refunded:
            logger.warning("Gateway refund failed for booking %s", booking_id)
            self._release_refund_claim(payment.id)
            return False

        logger.info("Booking %s refunded (transaction %s)", booking_id, payment.transaction_id)
        return True

    def _release_refund_claim(self, payment_id: str) -> None:
        self.booking_repository.transition_payment_status(
            payment_id,
            {PaymentStatus.REFUNDED},
            PaymentStatus.COMPLETED,
            refunded_at=None,
        )
        self.db.commit()

    def _transition(self, booking: Booking, to_status: BookingStatus, **values) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        if not self.booking_repository.transition_status(booking.id, booking.status, to_status, **values):
            self.db.rollback()
            raise CancellationNotAllowedError("This booking was changed by another request. Please try again.")
