import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.application.ports import Notifier, PaymentGateway, TicketQRIssuer
from booking_engine.domain.clock import utcnow
from booking_engine.domain.exceptions import BookingNotFoundError, InvalidStateTransitionError
from booking_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from booking_engine.infrastructure.config import Settings
from booking_engine.infrastructure.db.models import Booking, Ticket
from booking_engine.infrastructure.notifications.templates import render_booking_confirmation
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.loyalty_repository import LoyaltyRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketIssueReport:
    ticket_id: str
    ticket_number: str
    qr_reference: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ConfirmationResult:
    confirmed: bool
    booking_id: str
    message: str = ""
    already_confirmed: bool = False
    tickets: list[TicketIssueReport] = field(default_factory=list)
    loyalty_points_awarded: int = 0
    notification_sent: bool = False

    def __bool__(self) -> bool:
        return self.confirmed


class PaymentConfirmationService:
    """
    Moves a Pending booking to Confirmed once the gateway reports success.

    Safe to call any number of times for the same transaction: the status
    change is a compare-and-set, and only the caller that wins it issues
    QR codes, awards loyalty points and sends the confirmation email.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        qr_issuer: TicketQRIssuer,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.qr_issuer = qr_issuer
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.loyalty_repository = LoyaltyRepository(db)

    def confirm_payment(self, transaction_id: str, booking_id: str) -> ConfirmationResult:
        logger.info("Confirming payment %s for booking %s", transaction_id, booking_id)

        if not self.gateway.verify_transaction_succeeded(transaction_id):
            logger.warning(
                "Gateway does not report transaction %s as succeeded (booking %s)",
                transaction_id,
                booking_id,
            )
            return ConfirmationResult(False, booking_id, "Payment has not been completed.")

        try:
            booking = self.booking_repository.get_by_id(booking_id, with_details=True)
            if not booking:
                logger.warning("Booking %s not found for transaction %s", booking_id, transaction_id)
                return ConfirmationResult(False, booking_id, "Booking not found.")

            payment = booking.payment
            if payment is None or payment.transaction_id != transaction_id:
                logger.warning(
                    "Transaction %s does not belong to booking %s",
                    transaction_id,
                    booking_id,
                )
                return ConfirmationResult(False, booking_id, "Payment does not match this booking.")

            if booking.status is BookingStatus.CONFIRMED:
                logger.info("Booking %s already confirmed", booking_id)
                return self._already_confirmed(booking_id)

            BookingStateMachine.validate_transition(booking.status, BookingStatus.CONFIRMED)

            now = self.clock()
            won = self.booking_repository.transition_status(
                booking.id,
                BookingStatus.PENDING,
                BookingStatus.CONFIRMED,
                confirmed_at=now,
                updated_at=now,
            )
            if not won:
                self.db.rollback()
                current = self.booking_repository.get_by_id(booking_id, with_details=True)
                if current and current.status is BookingStatus.CONFIRMED:
                    logger.info("Booking %s was confirmed concurrently", booking_id)
                    return self._already_confirmed(booking_id)
                return ConfirmationResult(False, booking_id, "Booking can no longer be confirmed.")

            if not self.booking_repository.transition_payment_status(
                payment.id,
                {PaymentStatus.PENDING, PaymentStatus.FAILED},
                PaymentStatus.COMPLETED,
                paid_at=now,
            ):
                logger.warning(
                    "Payment %s for booking %s was in status %s when confirming",
                    payment.id,
                    booking_id,
                    payment.status.value,
                )
            self.booking_repository.mark_tickets_paid(booking.id)
            self.db.commit()

        except InvalidStateTransitionError as exc:
            self.db.rollback()
            logger.warning("Booking %s cannot be confirmed: %s", booking_id, exc)
            return ConfirmationResult(False, booking_id, "Booking can no longer be confirmed.")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Error confirming payment %s for booking %s", transaction_id, booking_id)
            return ConfirmationResult(False, booking_id, "Payment confirmation failed.")

        logger.info("Booking %s confirmed by transaction %s", booking_id, transaction_id)

        booking = self.booking_repository.get_by_id(booking_id, with_details=True)
        reports = self._issue_qr_codes(booking)
        points = self._award_loyalty(booking)
        sent = self._send_confirmation(booking, reports)

        return ConfirmationResult(
            confirmed=True,
            booking_id=booking_id,
            message="Payment confirmed.",
            tickets=reports,
            loyalty_points_awarded=points,
            notification_sent=sent,
        )

    def mark_payment_failed(self, transaction_id: str, reason: str | None = None) -> bool:
        payment = self.booking_repository.get_payment_by_transaction_id(transaction_id)
        if not payment:
            logger.warning("Payment failure reported for unknown transaction %s", transaction_id)
            return False

        if not PaymentStateMachine.can_transition(payment.status, PaymentStatus.FAILED):
            logger.info(
                "Ignoring failure for transaction %s in status %s",
                transaction_id,
                payment.status.value,
            )
            return False

        updated = self.booking_repository.transition_payment_status(
            payment.id,
            {PaymentStatus.PENDING},
            PaymentStatus.FAILED,
            notes=reason or payment.notes,
        )
        self.db.commit()

        if updated:
            logger.warning("Payment failed for transaction %s: %s", transaction_id, reason)
        return updated

    def reissue_missing_qr_codes(self, booking_id: str) -> list[TicketIssueReport]:
        booking = self.booking_repository.get_by_id(booking_id, with_details=True)
        if not booking:
            raise BookingNotFoundError()

        if booking.status is not BookingStatus.CONFIRMED:
            logger.info("Skipping QR reissue for booking %s in status %s", booking_id, booking.status.value)
            return []

        return self._issue_qr_codes(booking)

    # -----------------------------
    # Post-confirmation side effects
    # -----------------------------

    def _already_confirmed(self, booking_id: str) -> ConfirmationResult:
        return ConfirmationResult(
            confirmed=True,
            booking_id=booking_id,
            message="Booking already confirmed.",
            already_confirmed=True,
        )

    def _issue_qr_codes(self, booking: Booking) -> list[TicketIssueReport]:
        """One ticket failing does not stop the others; failures stay NULL for a later reissue."""
        reports = []
        for ticket in booking.tickets:
            if ticket.qr_code:
                reports.append(TicketIssueReport(ticket.id, ticket.ticket_number, ticket.qr_code))
                continue

            try:
                reference = self.qr_issuer.generate_and_store(
                    ticket_id=ticket.id,
                    event_id=booking.event_id,
                    customer_id=booking.customer_id,
                    ticket_number=ticket.ticket_number,
                    customer_name=booking.customer.full_name,
                    event_name=booking.event.title,
                    event_date=booking.event.starts_at,
                    venue_name=booking.event.venue_name,
                )
                self.booking_repository.set_ticket_qr_code(ticket.id, reference)
                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                logger.exception("Error generating QR code for ticket %s", ticket.ticket_number)
                reports.append(TicketIssueReport(ticket.id, ticket.ticket_number, error=str(exc)))
                continue

            reports.append(TicketIssueReport(ticket.id, ticket.ticket_number, reference))

        return reports

    def _loyalty_points_for(self, booking: Booking) -> int:
        unit = self.settings.loyalty_amount_unit
        amount_units = int((booking.total / unit).to_integral_value(rounding=ROUND_FLOOR)) if unit > 0 else 0
        return (
            self.settings.loyalty_points_per_ticket * len(booking.tickets)
            + self.settings.loyalty_points_per_amount_unit * amount_units
        )

    def _award_loyalty(self, booking: Booking) -> int:
        points = self._loyalty_points_for(booking)
        if points <= 0:
            return 0

        try:
            self.loyalty_repository.award(
                booking.customer_id,
                points,
                f"Booking {booking.reference}: {len(booking.tickets)} ticket(s)",
                self.clock(),
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Error awarding loyalty points for booking %s", booking.id)
            return 0

        logger.info("Awarded %s loyalty points to customer %s", points, booking.customer_id)
        return points

    def _send_confirmation(self, booking: Booking, reports: list[TicketIssueReport]) -> bool:
        references = {report.ticket_id: report.qr_reference for report in reports}
        tickets = [
            {
                "number": ticket.ticket_number,
                "category": ticket.price_tier.category,
                "price": ticket.price_tier.price,
                "qr_url": self._display_url(ticket, references.get(ticket.id)),
            }
            for ticket in booking.tickets
        ]

        try:
            html = render_booking_confirmation(booking, booking.event, tickets, self.settings.currency)
            self.notifier.send(
                booking.customer.email,
                f"Booking Confirmation - {booking.event.title}",
                html,
            )
        except Exception:
            logger.exception("Error sending booking confirmation for booking %s", booking.id)
            return False

        return True

    def _display_url(self, ticket: Ticket, qr_reference: str | None) -> str | None:
        if not qr_reference:
            return None
        try:
            return self.qr_issuer.resolve_display_url(qr_reference)
        except Exception:
            # The e-mail falls back to the "QR pending" note for this ticket.
            logger.exception("Could not resolve QR display URL for ticket %s", ticket.ticket_number)
            return None
