# booking_engine/infrastructure/payments/razorpay_gateway.py

import logging
from decimal import Decimal, ROUND_HALF_UP

import razorpay
import requests

from booking_engine.application.ports import PaymentIntent
from booking_engine.domain.exceptions import PaymentGatewayError
from booking_engine.infrastructure.config import Settings

logger = logging.getLogger(__name__)

_GATEWAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    requests.RequestException,
)

# Razorpay rejects orders below one rupee.
MINIMUM_ORDER_SUBUNITS = 100


def to_subunits(amount: Decimal) -> int:
    """Razorpay takes amounts in the currency's smallest unit (paise for INR)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RazorpayGateway:
    """
    Payment gateway backed by Razorpay orders.

    An order id plays the role of the transaction id: it is stored on the
    Payment row, handed to the browser checkout as the client secret, and
    reported back by the `order.paid` webhook.
    """

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        timeout: float = 10.0,
        client: razorpay.Client | None = None,
    ):
        if client is None:
            if not key_id or not key_secret:
                raise PaymentGatewayError(
                    "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
                )
            client = razorpay.Client(auth=(key_id, key_secret))
        self.client = client
        self.key_id = key_id
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            timeout=settings.gateway_timeout_seconds,
        )

    def resolve_or_create_customer(self, customer) -> str:
        if customer.gateway_customer_id:
            return customer.gateway_customer_id

        try:
            created = self.client.customer.create(
                {
                    "name": customer.full_name,
                    "email": customer.email,
                    # Returns the existing customer instead of failing on a duplicate email.
                    "fail_existing": "0",
                    "notes": {"customer_id": customer.id},
                },
                timeout=self.timeout,
            )
        except _GATEWAY_ERRORS as exc:
            logger.exception("Razorpay error creating customer for %s", customer.id)
            raise PaymentGatewayError() from exc
        return created["id"]

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_ref: str | None,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        subunits = to_subunits(amount)
        if subunits < MINIMUM_ORDER_SUBUNITS:
            logger.error(
                "Refusing Razorpay order below the minimum charge. booking_id=%s amount=%s",
                metadata.get("booking_id"),
                amount,
            )
            raise PaymentGatewayError()

        payload = {
            "amount": subunits,
            "currency": currency.upper(),
            "receipt": metadata.get("booking_id", ""),
            "notes": metadata,
        }
        if customer_ref:
            payload["customer_id"] = customer_ref

        try:
            order = self.client.order.create(payload, timeout=self.timeout)
        except _GATEWAY_ERRORS as exc:
            logger.exception(
                "Razorpay error creating order. booking_id=%s amount=%s",
                metadata.get("booking_id"),
                amount,
            )
            raise PaymentGatewayError() from exc

        return PaymentIntent(
            id=order["id"],
            client_secret=order["id"],
            amount=Decimal(amount),
            currency=currency.upper(),
        )

    def verify_transaction_succeeded(self, transaction_id: str) -> bool:
        try:
            order = self.client.order.fetch(transaction_id, timeout=self.timeout)
        except _GATEWAY_ERRORS:
            logger.exception("Razorpay error verifying order %s", transaction_id)
            return False
        return order.get("status") == "paid"

    def refund(self, transaction_id: str, amount: Decimal | None = None) -> bool:
        try:
            payments = self.client.order.payments(transaction_id, timeout=self.timeout)
            captured = [
                item for item in payments.get("items", [])
                if item.get("status") == "captured"
            ]
            if not captured:
                logger.warning("No captured payment to refund for order %s", transaction_id)
                return False

            data = {}
            if amount is not None:
                data["amount"] = to_subunits(amount)
            self.client.payment.refund(captured[0]["id"], data, timeout=self.timeout)
        except _GATEWAY_ERRORS:
            logger.exception("Razorpay error refunding order %s", transaction_id)
            return False
        return True

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> bool:
        try:
            self.client.utility.verify_webhook_signature(body, signature, secret)
        except razorpay.errors.SignatureVerificationError:
            return False
        return True
