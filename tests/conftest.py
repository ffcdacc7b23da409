# tests/conftest.py

from datetime import timedelta
from decimal import Decimal
import threading
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from booking_engine.api.routes.routes import (
    get_db,
    get_gateway,
    get_notifier,
    get_qr_issuer,
    get_settings,
)
from booking_engine.application.checkout_service import CheckoutService
from booking_engine.application.confirmation_service import PaymentConfirmationService
from booking_engine.application.ports import PaymentIntent
from booking_engine.domain.clock import utcnow
from booking_engine.domain.exceptions import PaymentGatewayError, QRGenerationError
from booking_engine.domain.pricing import DiscountType
from booking_engine.infrastructure.config import Settings
from booking_engine.infrastructure.db.models import Base, Customer, Discount, Event, EventPrice
from booking_engine.infrastructure.db.session import build_engine, build_session_factory
from booking_engine.main import app


# ---------------------
# FAKE COLLABORATORS
# ---------------------

class FakeGateway:
    WEBHOOK_SIGNATURE = "valid-signature"

    def __init__(self):
        self.paid: set[str] = set()
        self.intents: list[tuple[PaymentIntent, dict]] = []
        self.refunded: list[str] = []
        self.fail_intents = False
        self._lock = threading.Lock()

    def resolve_or_create_customer(self, customer) -> str:
        return customer.gateway_customer_id or f"cust_{customer.id[:8]}"

    def create_payment_intent(self, amount, currency, customer_ref, metadata) -> PaymentIntent:
        if self.fail_intents:
            raise PaymentGatewayError("order create timed out")

        order_id = f"order_{uuid4().hex[:14]}"
        intent = PaymentIntent(id=order_id, client_secret=order_id, amount=amount, currency=currency)
        with self._lock:
            self.intents.append((intent, dict(metadata)))
        return intent

    def verify_transaction_succeeded(self, transaction_id: str) -> bool:
        return transaction_id in self.paid

    def refund(self, transaction_id, amount=None) -> bool:
        self.refunded.append(transaction_id)
        return transaction_id in self.paid

    def verify_webhook_signature(self, body, signature, secret) -> bool:
        return signature == self.WEBHOOK_SIGNATURE

    def mark_paid(self, transaction_id: str) -> None:
        self.paid.add(transaction_id)


class FakeQRIssuer:
    """Fails on the call numbers listed in `fail_on` (1-based)."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = 0
        self.issued: list[str] = []
        self._lock = threading.Lock()

    def generate_and_store(
        self,
        ticket_id,
        event_id,
        customer_id,
        ticket_number,
        customer_name,
        event_name,
        event_date,
        venue_name,
    ) -> str:
        with self._lock:
            self.calls += 1
            call = self.calls
        if call in self.fail_on:
            raise QRGenerationError(f"Could not issue QR code for ticket {ticket_number}")

        self.issued.append(ticket_number)
        return f"tickets/qr-codes/ticket_{ticket_number}_{ticket_id}.png"

    def resolve_display_url(self, storage_ref: str) -> str:
        return f"https://media.test/{storage_ref}"


class RecordingNotifier:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to_address, subject, html_body) -> None:
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.sent.append((to_address, subject, html_body))


# ---------------------
# DATABASE
# ---------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'bookings.db'}",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret="whsec_test",
        qr_storage_dir=str(tmp_path / "qr"),
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------
# COLLABORATORS & SERVICES
# ---------------------

@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def qr_issuer():
    return FakeQRIssuer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def checkout_service(db, gateway, settings):
    return CheckoutService(db, gateway, settings)


@pytest.fixture
def confirmation_service(db, gateway, qr_issuer, notifier, settings):
    return PaymentConfirmationService(db, gateway, qr_issuer, notifier, settings)


# ---------------------
# SEED DATA
# ---------------------

@pytest.fixture
def make_customer(db):
    def _make(email=None, full_name="Asha Rao"):
        customer = Customer(email=email or f"{uuid4().hex[:8]}@example.com", full_name=full_name)
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def make_event(db):
    def _make(starts_in=timedelta(days=10), **overrides):
        now = utcnow()
        values = {
            "title": "Jazz Night",
            "venue_name": "Blue Frog, Mumbai",
            "starts_at": now + starts_in,
            "is_published": True,
            "status": "Published",
            "ticket_sales_start": now - timedelta(days=1),
            "ticket_sales_end": now + starts_in,
        }
        values.update(overrides)
        event = Event(**values)
        db.add(event)
        db.commit()
        return event

    return _make


@pytest.fixture
def make_tier(db):
    def _make(event, category="General", price="100", stock=10, **overrides):
        tier = EventPrice(
            event_id=event.id,
            category=category,
            price=Decimal(price),
            stock=stock,
            **overrides,
        )
        db.add(tier)
        db.commit()
        return tier

    return _make


@pytest.fixture
def make_discount(db):
    def _make(code="SAVE10", discount_type=DiscountType.PERCENT, value="10", **overrides):
        now = utcnow()
        values = {
            "code": code,
            "type": discount_type,
            "value": Decimal(value),
            "valid_from": now - timedelta(days=1),
            "valid_to": now + timedelta(days=30),
        }
        values.update(overrides)
        discount = Discount(**values)
        db.add(discount)
        db.commit()
        return discount

    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer(email="asha@example.com")


@pytest.fixture
def event(make_event):
    return make_event()


# ---------------------
# HTTP
# ---------------------

@pytest.fixture
def client(session_factory, settings, gateway, qr_issuer, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_qr_issuer] = lambda: qr_issuer
    app.dependency_overrides[get_notifier] = lambda: notifier

    # Not entered as a context manager: startup would wait for the real database.
    yield TestClient(app)

    app.dependency_overrides.clear()
