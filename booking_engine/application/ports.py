"""Collaborators the booking services call out to."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str
    amount: Decimal
    currency: str


class PaymentGateway(Protocol):
    def resolve_or_create_customer(self, customer) -> str: ...

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_ref: str | None,
        metadata: dict[str, str],
    ) -> PaymentIntent: ...

    def verify_transaction_succeeded(self, transaction_id: str) -> bool: ...

    def refund(self, transaction_id: str, amount: Decimal | None = None) -> bool: ...

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> bool: ...


class TicketQRIssuer(Protocol):
    def generate_and_store(
        self,
        ticket_id: str,
        event_id: str,
        customer_id: str,
        ticket_number: str,
        customer_name: str,
        event_name: str,
        event_date: datetime,
        venue_name: str | None,
    ) -> str: ...

    def resolve_display_url(self, storage_ref: str) -> str: ...


class Notifier(Protocol):
    def send(self, to_address: str, subject: str, html_body: str) -> None: ...
