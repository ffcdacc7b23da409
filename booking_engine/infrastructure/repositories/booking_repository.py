# booking_engine/infrastructure/repositories/booking_repository.py

from datetime import datetime
from uuid import uuid4

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select, update

from booking_engine.infrastructure.db.models import Booking, Payment, Ticket
from booking_engine.domain.pricing import PriceBreakdown
from booking_engine.domain.state_machine import BookingStatus, PaymentStatus

REFERENCE_LENGTH = 12


def generate_reference() -> str:
    return uuid4().hex[:REFERENCE_LENGTH].upper()


def ticket_number(reference: str, price_tier_id: str, sequence: int) -> str:
    return f"{reference}-{price_tier_id[:8]}-{sequence:03d}"


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        with_details: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if with_details:
            stmt = stmt.options(
                selectinload(Booking.tickets).selectinload(Ticket.price_tier),
                selectinload(Booking.event),
                selectinload(Booking.customer),
                selectinload(Booking.payment),
            ).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_customer(self, customer_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.customer_id == customer_id)
            .options(
                selectinload(Booking.tickets).selectinload(Ticket.price_tier),
                selectinload(Booking.event),
            )
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        customer_id: str,
        event_id: str,
        breakdown: PriceBreakdown,
        discount_id: str | None = None,
    ) -> Booking:

        booking = Booking(
            id=str(uuid4()),
            reference=generate_reference(),
            customer_id=customer_id,
            event_id=event_id,
            discount_id=discount_id,
            status=BookingStatus.PENDING,
            subtotal=breakdown.subtotal,
            discount_amount=breakdown.discount_amount,
            fees=breakdown.fees,
            total=breakdown.total,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def create_payment(
        self,
        booking: Booking,
        transaction_id: str,
        currency: str,
        notes: str | None = None,
    ) -> Payment:

        payment = Payment(
            id=str(uuid4()),
            booking_id=booking.id,
            customer_id=booking.customer_id,
            amount=booking.total,
            discount_amount=booking.discount_amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            transaction_id=transaction_id,
            notes=notes,
        )
        self.db.add(payment)
        return payment

    def create_tickets(
        self,
        booking: Booking,
        payment: Payment,
        price_tier_id: str,
        quantity: int,
    ) -> list[Ticket]:

        tickets = [
            Ticket(
                ticket_number=ticket_number(booking.reference, price_tier_id, sequence),
                booking_id=booking.id,
                event_id=booking.event_id,
                price_tier_id=price_tier_id,
                payment_id=payment.id,
                customer_id=booking.customer_id,
                qr_code=None,
                is_paid=False,
            )
            for sequence in range(1, quantity + 1)
        ]
        self.db.add_all(tickets)
        return tickets

    def transition_status(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **values,
    ) -> bool:
        """
        Atomic compare-and-set on the booking status.
        Returns False when another unit of work moved the booking first.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def transition_payment_status(
        self,
        payment_id: str,
        from_statuses: set[PaymentStatus],
        to_status: PaymentStatus,
        **values,
    ) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status.in_(from_statuses))
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def get_payment_by_transaction_id(self, transaction_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def mark_tickets_paid(self, booking_id: str) -> None:
        self.db.execute(
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .values(is_paid=True)
            .execution_options(synchronize_session=False)
        )

    def invalidate_tickets(self, booking_id: str, used_at: datetime) -> None:
        self.db.execute(
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .values(is_used=True, used_at=used_at)
            .execution_options(synchronize_session=False)
        )

    def set_ticket_qr_code(self, ticket_id: str, qr_reference: str) -> None:
        self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.qr_code.is_(None))
            .values(qr_code=qr_reference)
            .execution_options(synchronize_session=False)
        )
