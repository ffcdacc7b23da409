import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.application.discount_service import DiscountValidator
from booking_engine.application.ports import PaymentGateway
from booking_engine.domain.clock import as_utc, utcnow
from booking_engine.domain.exceptions import (
    CheckoutValidationError,
    DiscountError,
    InventoryExhaustedError,
    PaymentGatewayError,
)
from booking_engine.domain.pricing import (
    TierSelection,
    compute_subtotal,
    merge_selections,
    price_order,
)
from booking_engine.infrastructure.config import Settings
from booking_engine.infrastructure.db.models import Event
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.discount_repository import DiscountRepository
from booking_engine.infrastructure.repositories.event_repository import (
    CustomerRepository,
    EventRepository,
)
from booking_engine.infrastructure.repositories.tier_repository import TierRepository

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "An error occurred while processing your booking. Please try again."


@dataclass(frozen=True)
class CheckoutResult:
    success: bool
    message: str
    error_code: str | None = None
    booking_id: str | None = None
    reference: str | None = None
    transaction_id: str | None = None
    client_secret: str | None = None
    key_id: str | None = None
    total: Decimal | None = None
    currency: str | None = None

    @classmethod
    def failure(cls, error_code: str, message: str) -> "CheckoutResult":
        return cls(success=False, message=message, error_code=error_code)


class CheckoutService:
    """
    Turns a ticket selection into a Pending booking with a payment intent.

    Everything from the stock reservation to the discount usage bump is
    written in one transaction: either the booking, its payment row, its
    tickets and the reservation all commit, or none of them do.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.clock = clock
        self.event_repository = EventRepository(db)
        self.customer_repository = CustomerRepository(db)
        self.tier_repository = TierRepository(db)
        self.booking_repository = BookingRepository(db)
        self.discount_repository = DiscountRepository(db)
        self.discount_validator = DiscountValidator(db)

    def process_checkout(
        self,
        event_id: str,
        customer_id: str,
        selections: Iterable[TierSelection],
        discount_code: str | None = None,
    ) -> CheckoutResult:
        logger.info("Checkout started. event_id=%s customer_id=%s", event_id, customer_id)

        try:
            return self._checkout(event_id, customer_id, list(selections), discount_code)
        except (CheckoutValidationError, DiscountError, InventoryExhaustedError) as exc:
            self.db.rollback()
            logger.info(
                "Checkout rejected. event_id=%s customer_id=%s code=%s reason=%s",
                event_id,
                customer_id,
                exc.code,
                exc,
            )
            return CheckoutResult.failure(exc.code, exc.user_message)
        except PaymentGatewayError as exc:
            self.db.rollback()
            logger.error(
                "Checkout aborted by payment gateway. event_id=%s customer_id=%s error=%s",
                event_id,
                customer_id,
                exc,
            )
            return CheckoutResult.failure(exc.code, GENERIC_FAILURE_MESSAGE)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "Persistence error during checkout. event_id=%s customer_id=%s",
                event_id,
                customer_id,
            )
            return CheckoutResult.failure("PERSISTENCE_FAILURE", GENERIC_FAILURE_MESSAGE)
        except Exception:
            self.db.rollback()
            logger.exception(
                "Error processing checkout. event_id=%s customer_id=%s",
                event_id,
                customer_id,
            )
            return CheckoutResult.failure("CHECKOUT_FAILED", GENERIC_FAILURE_MESSAGE)

    def _checkout(
        self,
        event_id: str,
        customer_id: str,
        selections: list[TierSelection],
        discount_code: str | None,
    ) -> CheckoutResult:
        now = self.clock()

        event = self.event_repository.get_by_id(event_id)
        self._ensure_on_sale(event, now)
        self._ensure_not_sold_out(event)

        customer = self.customer_repository.get_by_id(customer_id)
        if not customer:
            raise CheckoutValidationError("Customer not found.")

        requested = merge_selections(selections)
        tiers = self.tier_repository.lock_tiers([item.price_tier_id for item in requested])
        subtotal = compute_subtotal(
            tiers,
            requested,
            event_id=event.id,
            now=now,
            max_per_tier=self.settings.max_tickets_per_tier,
        )

        for item in requested:
            available = self.tier_repository.availability(item.price_tier_id)
            if available < item.quantity:
                raise InventoryExhaustedError(
                    f"Only {available} '{tiers[item.price_tier_id].category}' tickets are left."
                )

        terms = None
        if discount_code:
            terms = self.discount_validator.validate(discount_code, event.id, now)

        breakdown = price_order(
            subtotal,
            terms,
            service_fee_rate=self.settings.service_fee_rate,
            processing_fee=self.settings.processing_fee,
        )
        self._ensure_chargeable(breakdown.total)

        customer_ref = self.gateway.resolve_or_create_customer(customer)
        if customer_ref != customer.gateway_customer_id:
            self.customer_repository.set_gateway_customer_id(customer, customer_ref)

        booking = self.booking_repository.create_booking(
            customer_id=customer.id,
            event_id=event.id,
            breakdown=breakdown,
            discount_id=terms.discount_id if terms else None,
        )

        for item in requested:
            self.tier_repository.reserve(item.price_tier_id, item.quantity)

        intent = self.gateway.create_payment_intent(
            breakdown.total,
            self.settings.currency,
            customer_ref,
            {
                "booking_id": booking.id,
                "event_id": event.id,
                "customer_id": customer.id,
            },
        )

        payment = self.booking_repository.create_payment(
            booking,
            transaction_id=intent.id,
            currency=self.settings.currency,
            notes=f"Booking for {event.title}",
        )
        self.db.flush()

        for item in requested:
            self.booking_repository.create_tickets(booking, payment, item.price_tier_id, item.quantity)

        if terms:
            self.discount_repository.consume(terms.discount_id)

        self.db.commit()

        logger.info(
            "Checkout created booking. booking_id=%s reference=%s total=%s transaction_id=%s",
            booking.id,
            booking.reference,
            breakdown.total,
            intent.id,
        )
        return CheckoutResult(
            success=True,
            message="Booking created. Complete the payment to confirm your tickets.",
            booking_id=booking.id,
            reference=booking.reference,
            transaction_id=intent.id,
            client_secret=intent.client_secret,
            key_id=self.settings.razorpay_key_id,
            total=breakdown.total,
            currency=self.settings.currency,
        )

    def _ensure_on_sale(self, event: Event | None, now: datetime) -> None:
        if not event or not event.is_bookable:
            raise CheckoutValidationError("This event is not available for booking.")

        sales_start = as_utc(event.ticket_sales_start)
        if sales_start and sales_start > now:
            raise CheckoutValidationError("Ticket sales for this event have not started yet.")

        sales_end = as_utc(event.ticket_sales_end)
        if sales_end and sales_end < now:
            raise CheckoutValidationError("Ticket sales for this event have ended.")

    def _ensure_chargeable(self, total: Decimal) -> None:
        # The gateway refuses orders below its minimum charge, so free orders stop here.
        minimum = self.settings.min_order_total
        if total < minimum:
            raise CheckoutValidationError(
                f"The order total must be at least {minimum} {self.settings.currency}. "
                "Remove the discount code or add more tickets."
            )

    def _ensure_not_sold_out(self, event: Event) -> None:
        tiers = self.tier_repository.list_for_event(event.id, active_only=True)
        if all(self.tier_repository.availability(tier.id) == 0 for tier in tiers):
            raise InventoryExhaustedError("This event is sold out.")
