# tests/integration/test_payment_confirmation.py

from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import select

from booking_engine.application.confirmation_service import PaymentConfirmationService
from booking_engine.domain.pricing import TierSelection
from booking_engine.domain.state_machine import BookingStatus, PaymentStatus
from booking_engine.infrastructure.db.models import Booking, LoyaltyPoint
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository


def _paid_checkout(checkout_service, gateway, event, customer, tier, quantity=2):
    result = checkout_service.process_checkout(event.id, customer.id, [TierSelection(tier.id, quantity)])
    assert result.success, result.message
    gateway.mark_paid(result.transaction_id)
    return result


def _loyalty(db, customer_id) -> int:
    db.expire_all()
    row = db.execute(
        select(LoyaltyPoint).where(LoyaltyPoint.customer_id == customer_id)
    ).scalar_one_or_none()
    return row.points if row else 0


def _booking(db, booking_id) -> Booking:
    db.expire_all()
    return BookingRepository(db).get_by_id(booking_id, with_details=True)


# ---------------------
# HAPPY PATH
# ---------------------

def test_confirmation_completes_booking(
    db, checkout_service, confirmation_service, gateway, qr_issuer, notifier, event, customer, make_tier
):
    tier = make_tier(event, price="250")
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier)

    result = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert result
    assert not result.already_confirmed
    assert all(report.ok for report in result.tickets)

    booking = _booking(db, checkout.booking_id)
    assert booking.status is BookingStatus.CONFIRMED
    assert booking.confirmed_at is not None
    assert booking.payment.status is PaymentStatus.COMPLETED
    assert booking.payment.paid_at is not None
    assert all(ticket.is_paid for ticket in booking.tickets)
    assert all(ticket.qr_code for ticket in booking.tickets)

    # 10 per ticket plus 1 per 100 of the 500 total.
    assert result.loyalty_points_awarded == 25
    assert _loyalty(db, customer.id) == 25

    assert result.notification_sent
    assert len(notifier.sent) == 1
    to_address, subject, html = notifier.sent[0]
    assert to_address == "asha@example.com"
    assert subject == "Booking Confirmation - Jazz Night"
    for ticket in booking.tickets:
        assert ticket.ticket_number in html
        assert f"https://media.test/{ticket.qr_code}" in html


def test_unpaid_transaction_is_not_confirmed(db, checkout_service, confirmation_service, notifier, event, customer, make_tier):
    tier = make_tier(event)
    checkout = checkout_service.process_checkout(event.id, customer.id, [TierSelection(tier.id, 1)])

    result = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert not result
    assert _booking(db, checkout.booking_id).status is BookingStatus.PENDING
    assert notifier.sent == []


def test_transaction_must_belong_to_booking(
    db, checkout_service, confirmation_service, gateway, event, make_customer, make_tier
):
    tier = make_tier(event)
    first = _paid_checkout(checkout_service, gateway, event, make_customer(), tier, quantity=1)
    second = _paid_checkout(checkout_service, gateway, event, make_customer(), tier, quantity=1)

    result = confirmation_service.confirm_payment(second.transaction_id, first.booking_id)

    assert not result
    assert _booking(db, first.booking_id).status is BookingStatus.PENDING


def test_unknown_booking(confirmation_service, gateway):
    gateway.mark_paid("order_unknown")
    assert not confirmation_service.confirm_payment("order_unknown", "no-such-booking")


# ---------------------
# IDEMPOTENCE
# ---------------------

def test_second_confirmation_has_no_side_effects(
    db, checkout_service, confirmation_service, gateway, qr_issuer, notifier, event, customer, make_tier
):
    tier = make_tier(event, price="250")
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier)

    first = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)
    second = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert first and second
    assert not first.already_confirmed
    assert second.already_confirmed
    assert second.loyalty_points_awarded == 0
    assert qr_issuer.calls == 2
    assert len(notifier.sent) == 1
    assert _loyalty(db, customer.id) == 25


def test_concurrent_confirmations_apply_once(
    db, session_factory, checkout_service, gateway, qr_issuer, notifier, settings, event, customer, make_tier
):
    tier = make_tier(event, price="250")
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier)

    def confirm(_):
        session = session_factory()
        try:
            service = PaymentConfirmationService(session, gateway, qr_issuer, notifier, settings)
            return service.confirm_payment(checkout.transaction_id, checkout.booking_id)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(confirm, range(4)))

    assert all(results)
    assert sum(1 for result in results if not result.already_confirmed) == 1
    assert qr_issuer.calls == 2
    assert len(notifier.sent) == 1
    assert _loyalty(db, customer.id) == 25


# ---------------------
# BEST-EFFORT SIDE EFFECTS
# ---------------------

def test_qr_failure_is_isolated_per_ticket(
    db, checkout_service, confirmation_service, gateway, qr_issuer, notifier, event, customer, make_tier
):
    tier = make_tier(event)
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier, quantity=3)
    qr_issuer.fail_on = {2}

    result = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert result
    assert [report.ok for report in result.tickets].count(False) == 1
    failed = next(report for report in result.tickets if not report.ok)
    assert "Could not issue QR code" in failed.error

    booking = _booking(db, checkout.booking_id)
    assert booking.status is BookingStatus.CONFIRMED
    assert sum(1 for ticket in booking.tickets if ticket.qr_code is None) == 1
    assert all(ticket.is_paid for ticket in booking.tickets)

    assert len(notifier.sent) == 1
    assert "Your QR code will be available in your account shortly." in notifier.sent[0][2]

    reports = confirmation_service.reissue_missing_qr_codes(checkout.booking_id)

    assert all(report.ok for report in reports)
    assert qr_issuer.calls == 4
    booking = _booking(db, checkout.booking_id)
    assert all(ticket.qr_code for ticket in booking.tickets)


def test_notification_failure_keeps_confirmation(
    db, checkout_service, confirmation_service, gateway, notifier, event, customer, make_tier
):
    tier = make_tier(event)
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier)
    notifier.fail = True

    result = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert result
    assert not result.notification_sent
    assert _booking(db, checkout.booking_id).status is BookingStatus.CONFIRMED


def test_unresolvable_qr_url_still_sends_confirmation(
    db, checkout_service, confirmation_service, gateway, qr_issuer, notifier, event, customer, make_tier, monkeypatch
):
    tier = make_tier(event)
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier)

    def presign_failure(storage_ref):
        raise RuntimeError("presign failed")

    monkeypatch.setattr(qr_issuer, "resolve_display_url", presign_failure)

    result = confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert result
    assert result.notification_sent
    assert result.loyalty_points_awarded == 22
    assert "Your QR code will be available in your account shortly." in notifier.sent[0][2]

    booking = _booking(db, checkout.booking_id)
    assert booking.status is BookingStatus.CONFIRMED
    assert all(ticket.qr_code for ticket in booking.tickets)


def test_loyalty_accumulates_across_bookings(
    db, checkout_service, confirmation_service, gateway, event, customer, make_tier
):
    tier = make_tier(event, price="100")
    first = _paid_checkout(checkout_service, gateway, event, customer, tier, quantity=1)
    second = _paid_checkout(checkout_service, gateway, event, customer, tier, quantity=3)

    confirmation_service.confirm_payment(first.transaction_id, first.booking_id)
    confirmation_service.confirm_payment(second.transaction_id, second.booking_id)

    assert _loyalty(db, customer.id) == (10 + 1) + (30 + 3)


# ---------------------
# FAILED PAYMENTS
# ---------------------

def test_failed_payment_can_be_retried(
    db, checkout_service, confirmation_service, gateway, event, customer, make_tier
):
    tier = make_tier(event)
    checkout = checkout_service.process_checkout(event.id, customer.id, [TierSelection(tier.id, 1)])

    assert confirmation_service.mark_payment_failed(checkout.transaction_id, "Card declined")

    booking = _booking(db, checkout.booking_id)
    assert booking.payment.status is PaymentStatus.FAILED
    assert booking.status is BookingStatus.PENDING

    gateway.mark_paid(checkout.transaction_id)
    assert confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)
    assert _booking(db, checkout.booking_id).payment.status is PaymentStatus.COMPLETED


def test_failure_after_completion_is_ignored(
    db, checkout_service, confirmation_service, gateway, event, customer, make_tier
):
    tier = make_tier(event)
    checkout = _paid_checkout(checkout_service, gateway, event, customer, tier, quantity=1)
    confirmation_service.confirm_payment(checkout.transaction_id, checkout.booking_id)

    assert not confirmation_service.mark_payment_failed(checkout.transaction_id, "late failure event")
    assert _booking(db, checkout.booking_id).payment.status is PaymentStatus.COMPLETED


def test_failure_for_unknown_transaction(confirmation_service):
    assert not confirmation_service.mark_payment_failed("order_unknown")
