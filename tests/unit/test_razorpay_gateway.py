# tests/unit/test_razorpay_gateway.py

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import razorpay

from booking_engine.domain.exceptions import PaymentGatewayError
from booking_engine.infrastructure.payments.razorpay_gateway import RazorpayGateway, to_subunits


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def gateway(client):
    return RazorpayGateway("rzp_test_key", "secret", timeout=5.0, client=client)


def test_amounts_are_sent_in_paise():
    assert to_subunits(Decimal("900.00")) == 90000
    assert to_subunits(Decimal("10.995")) == 1100
    assert to_subunits(Decimal("0")) == 0


def test_missing_keys_rejected():
    with pytest.raises(PaymentGatewayError):
        RazorpayGateway(None, None)


def test_payment_intent_is_a_razorpay_order(gateway, client):
    client.order.create.return_value = {"id": "order_123", "status": "created"}

    intent = gateway.create_payment_intent(
        Decimal("900.00"),
        "inr",
        "cust_1",
        {"booking_id": "booking-1", "event_id": "event-1", "customer_id": "customer-1"},
    )

    assert intent.id == "order_123"
    assert intent.client_secret == "order_123"
    assert intent.currency == "INR"
    client.order.create.assert_called_once_with(
        {
            "amount": 90000,
            "currency": "INR",
            "receipt": "booking-1",
            "notes": {"booking_id": "booking-1", "event_id": "event-1", "customer_id": "customer-1"},
            "customer_id": "cust_1",
        },
        timeout=5.0,
    )


def test_order_errors_become_gateway_errors(gateway, client):
    client.order.create.side_effect = razorpay.errors.ServerError("upstream down")

    with pytest.raises(PaymentGatewayError):
        gateway.create_payment_intent(Decimal("100"), "INR", None, {"booking_id": "booking-1"})


def test_order_below_minimum_charge_never_reaches_razorpay(gateway, client):
    with pytest.raises(PaymentGatewayError):
        gateway.create_payment_intent(Decimal("0.99"), "INR", None, {"booking_id": "booking-1"})

    client.order.create.assert_not_called()


def test_existing_customer_handle_is_reused(gateway, client):
    customer = SimpleNamespace(id="customer-1", gateway_customer_id="cust_existing")

    assert gateway.resolve_or_create_customer(customer) == "cust_existing"
    client.customer.create.assert_not_called()


def test_customer_created_once(gateway, client):
    client.customer.create.return_value = {"id": "cust_new"}
    customer = SimpleNamespace(
        id="customer-1",
        gateway_customer_id=None,
        full_name="Asha Rao",
        email="asha@example.com",
    )

    assert gateway.resolve_or_create_customer(customer) == "cust_new"


def test_verify_checks_order_status(gateway, client):
    client.order.fetch.return_value = {"id": "order_123", "status": "paid"}
    assert gateway.verify_transaction_succeeded("order_123")

    client.order.fetch.return_value = {"id": "order_123", "status": "attempted"}
    assert not gateway.verify_transaction_succeeded("order_123")


def test_verify_returns_false_on_gateway_error(gateway, client):
    client.order.fetch.side_effect = razorpay.errors.BadRequestError("order not found")
    assert not gateway.verify_transaction_succeeded("order_missing")


def test_refund_targets_captured_payment(gateway, client):
    client.order.payments.return_value = {
        "items": [
            {"id": "pay_failed", "status": "failed"},
            {"id": "pay_ok", "status": "captured"},
        ]
    }

    assert gateway.refund("order_123")
    client.payment.refund.assert_called_once_with("pay_ok", {}, timeout=5.0)


def test_refund_without_captured_payment(gateway, client):
    client.order.payments.return_value = {"items": [{"id": "pay_failed", "status": "failed"}]}

    assert not gateway.refund("order_123")
    client.payment.refund.assert_not_called()


def test_webhook_signature(gateway, client):
    assert gateway.verify_webhook_signature("{}", "sig", "whsec")

    client.utility.verify_webhook_signature.side_effect = razorpay.errors.SignatureVerificationError(
        "Razorpay Signature Verification Failed"
    )
    assert not gateway.verify_webhook_signature("{}", "bad", "whsec")
