# booking_engine/infrastructure/qr/ticket_qr_service.py

from datetime import datetime
from io import BytesIO
from pathlib import Path
import json
import logging

import qrcode

from booking_engine.domain.clock import utcnow
from booking_engine.domain.exceptions import QRGenerationError
from booking_engine.infrastructure.config import Settings

logger = logging.getLogger(__name__)

QR_FOLDER = "tickets/qr-codes"


def build_ticket_payload(
    ticket_id: str,
    event_id: str,
    customer_id: str,
    ticket_number: str,
    issued_at: datetime,
) -> str:
    return json.dumps(
        {
            "ticketId": ticket_id,
            "eventId": event_id,
            "customerId": customer_id,
            "ticketNumber": ticket_number,
            "timestamp": issued_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "type": "ticket",
            "version": "1.0",
        },
        sort_keys=True,
    )


def render_png(data: str) -> bytes:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_Q, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    buffer = BytesIO()
    qr.make_image().save(buffer)
    return buffer.getvalue()


class LocalQRCodeStore:
    """Writes QR images under a directory served at `public_base_url`."""

    def __init__(self, root_dir: str, public_base_url: str):
        self.root = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def save(self, content: bytes, file_name: str, folder: str = QR_FOLDER) -> str:
        relative_path = f"{folder}/{file_name}"
        target = self.root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return relative_path

    def url_for(self, relative_path: str) -> str:
        return f"{self.public_base_url}/{relative_path}"


class TicketQRService:

    def __init__(self, store: LocalQRCodeStore):
        self.store = store

    @classmethod
    def from_settings(cls, settings: Settings) -> "TicketQRService":
        return cls(LocalQRCodeStore(settings.qr_storage_dir, settings.qr_public_base_url))

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
    ) -> str:
        payload = build_ticket_payload(ticket_id, event_id, customer_id, ticket_number, utcnow())
        try:
            image = render_png(payload)
            path = self.store.save(image, f"ticket_{ticket_number}_{ticket_id}.png")
        except (OSError, ValueError) as exc:
            raise QRGenerationError(f"Could not issue QR code for ticket {ticket_number}") from exc

        logger.info(
            "QR code stored for ticket %s (%s, %s) at %s",
            ticket_number,
            customer_name,
            event_name,
            path,
        )
        return path

    def resolve_display_url(self, storage_ref: str) -> str:
        return self.store.url_for(storage_ref)
