import hashlib
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_engine.infrastructure.db.session import SessionLocal, settings as app_settings
from booking_engine.infrastructure.config import Settings
from booking_engine.application.booking_service import BookingService
from booking_engine.application.checkout_service import CheckoutService
from booking_engine.application.confirmation_service import PaymentConfirmationService
from booking_engine.application.discount_service import DiscountValidator
from booking_engine.application.ports import Notifier, PaymentGateway, TicketQRIssuer
from booking_engine.api.schemas.schemas import (
    BookingResponse,
    CancelBookingRequest,
    CheckoutOptionsResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    DiscountValidateRequest,
    DiscountValidateResponse,
    RefundResponse,
    TicketIssueResponse,
    TicketResponse,
    TierAvailabilityResponse,
    TierOptionResponse,
    WebhookAckResponse,
)
from booking_engine.domain.exceptions import (
    BookingEngineError,
    BookingNotFoundError,
    CancellationNotAllowedError,
    CheckoutValidationError,
    DiscountError,
    InvalidStateTransitionError,
    PaymentGatewayError,
)
from booking_engine.domain.pricing import TierSelection
from booking_engine.infrastructure.db.models import Booking, EventPrice, PaymentWebhookEvent
from booking_engine.infrastructure.notifications.email import build_notifier
from booking_engine.infrastructure.payments.razorpay_gateway import RazorpayGateway
from booking_engine.infrastructure.qr.ticket_qr_service import TicketQRService
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.event_repository import EventRepository
from booking_engine.infrastructure.repositories.tier_repository import TierRepository


router = APIRouter()
logger = logging.getLogger(__name__)

WEBHOOK_PROVIDER = "RAZORPAY"
CONFIRMING_WEBHOOK_EVENTS = {"order.paid", "payment.captured"}
FAILING_WEBHOOK_EVENTS = {"payment.failed"}
_SETTLED_WEBHOOK_STATUSES = {"PROCESSED", "IGNORED"}

_CHECKOUT_STATUS_CODES = {
    "VALIDATION_FAILED": status.HTTP_400_BAD_REQUEST,
    "INVALID_SELECTION": status.HTTP_400_BAD_REQUEST,
    "INVALID_DISCOUNT": status.HTTP_400_BAD_REQUEST,
    "INVENTORY_EXHAUSTED": status.HTTP_409_CONFLICT,
    "GATEWAY_FAILURE": status.HTTP_502_BAD_GATEWAY,
    "PERSISTENCE_FAILURE": status.HTTP_503_SERVICE_UNAVAILABLE,
}


# -----------------------------
# Dependencies
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_settings() -> Settings:
    return app_settings


def get_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    try:
        return RazorpayGateway.from_settings(settings)
    except PaymentGatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.",
        ) from exc


def get_qr_issuer(settings: Settings = Depends(get_settings)) -> TicketQRIssuer:
    return TicketQRService.from_settings(settings)


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return build_notifier(settings)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


# -----------------------------
# Helpers
# -----------------------------
def _http_error(exc: BookingEngineError) -> HTTPException:
    if isinstance(exc, BookingNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (CancellationNotAllowedError, InvalidStateTransitionError)):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=exc.user_message)


def _hash_webhook_payload(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _booking_response(booking: Booking, qr_issuer: TicketQRIssuer) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        reference=booking.reference,
        status=booking.status.value,
        event_id=booking.event_id,
        event_title=booking.event.title if booking.event else None,
        subtotal=booking.subtotal,
        discount_amount=booking.discount_amount,
        fees=booking.fees,
        total=booking.total,
        payment_status=booking.payment.status.value if booking.payment else None,
        created_at=booking.created_at.isoformat(),
        tickets=[
            TicketResponse(
                ticket_number=ticket.ticket_number,
                category=ticket.price_tier.category,
                price=ticket.price_tier.price,
                is_paid=ticket.is_paid,
                is_used=ticket.is_used,
                qr_code_url=qr_issuer.resolve_display_url(ticket.qr_code) if ticket.qr_code else None,
            )
            for ticket in booking.tickets
        ],
    )


def _webhook_target(db: Session, payload: dict) -> tuple[str | None, str | None]:
    """Returns (order id, booking id) for a Razorpay webhook payload."""
    entities = payload.get("payload", {})
    order = entities.get("order", {}).get("entity", {})
    payment = entities.get("payment", {}).get("entity", {})

    order_id = order.get("id") or payment.get("order_id")
    booking_id = (order.get("notes") or {}).get("booking_id") or (payment.get("notes") or {}).get("booking_id")

    if order_id and not booking_id:
        stored = BookingRepository(db).get_payment_by_transaction_id(order_id)
        if stored:
            booking_id = stored.booking_id
    return order_id, booking_id


# -----------------------------
# Routes
# -----------------------------
@router.get("/health")
def health():
    return {"message": "Event Booking Engine is running"}


@router.get("/events/{event_id}/checkout", response_model=CheckoutOptionsResponse)
def get_checkout_options(
    event_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    event = EventRepository(db).get_by_id(event_id)
    if not event:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Event not found",
        )

    try:
        options = BookingService(db, settings).get_checkout_options(event_id)
    except CheckoutValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.user_message,
        ) from exc

    return CheckoutOptionsResponse(
        event_id=event.id,
        title=event.title,
        starts_at=event.starts_at.isoformat(),
        venue_name=event.venue_name,
        tiers=[
            TierOptionResponse(
                tier_id=option.tier_id,
                category=option.category,
                description=option.description,
                price=option.price,
                available=option.available,
                max_quantity=option.max_quantity,
            )
            for option in options
        ],
    )


@router.post("/events/{event_id}/checkout", response_model=CheckoutResponse)
def process_checkout(
    event_id: str,
    request: CheckoutRequest,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
):
    result = CheckoutService(db, gateway, settings).process_checkout(
        event_id=event_id,
        customer_id=request.customer_id,
        selections=[
            TierSelection(price_tier_id=item.price_tier_id, quantity=item.quantity)
            for item in request.selections
        ],
        discount_code=request.discount_code,
    )

    if not result.success:
        response.status_code = _CHECKOUT_STATUS_CODES.get(
            result.error_code,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return CheckoutResponse(
        success=result.success,
        message=result.message,
        error_code=result.error_code,
        booking_id=result.booking_id,
        reference=result.reference,
        transaction_id=result.transaction_id,
        client_secret=result.client_secret,
        key_id=result.key_id,
        total=result.total,
        currency=result.currency,
    )


@router.post("/discounts/validate", response_model=DiscountValidateResponse)
def validate_discount(
    request: DiscountValidateRequest,
    db: Session = Depends(get_db),
):
    try:
        terms = DiscountValidator(db).validate(request.code, request.event_id)
    except DiscountError as exc:
        return DiscountValidateResponse(valid=False, message=exc.user_message)

    return DiscountValidateResponse(
        valid=True,
        message="Coupon applied.",
        code=terms.code,
        type=terms.type.value,
        value=terms.value,
    )


@router.get("/tiers/{tier_id}/availability", response_model=TierAvailabilityResponse)
def get_tier_availability(tier_id: str, db: Session = Depends(get_db)):
    tier = db.execute(select(EventPrice).where(EventPrice.id == tier_id)).scalar_one_or_none()
    if not tier:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Price tier not found",
        )
    return TierAvailabilityResponse(
        tier_id=tier.id,
        available=TierRepository(db).availability(tier.id),
    )


@router.post("/bookings/{booking_id}/confirm", response_model=ConfirmPaymentResponse)
def confirm_booking_payment(
    booking_id: str,
    request: ConfirmPaymentRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
    qr_issuer: TicketQRIssuer = Depends(get_qr_issuer),
    notifier: Notifier = Depends(get_notifier),
):
    service = PaymentConfirmationService(db, gateway, qr_issuer, notifier, settings)
    result = service.confirm_payment(request.transaction_id, booking_id)
    if not result:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message,
        )

    return ConfirmPaymentResponse(
        booking_id=result.booking_id,
        confirmed=result.confirmed,
        already_confirmed=result.already_confirmed,
        message=result.message,
        loyalty_points_awarded=result.loyalty_points_awarded,
        notification_sent=result.notification_sent,
        tickets=[
            TicketIssueResponse(
                ticket_id=report.ticket_id,
                ticket_number=report.ticket_number,
                qr_issued=report.ok,
            )
            for report in result.tickets
        ],
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    qr_issuer: TicketQRIssuer = Depends(get_qr_issuer),
):
    try:
        booking = BookingService(db, settings).get_booking(booking_id)
    except BookingNotFoundError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking, qr_issuer)


@router.get("/customers/{customer_id}/bookings", response_model=list[BookingResponse])
def list_customer_bookings(
    customer_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    qr_issuer: TicketQRIssuer = Depends(get_qr_issuer),
):
    bookings = BookingService(db, settings).list_customer_bookings(customer_id)
    return [_booking_response(booking, qr_issuer) for booking in bookings]


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    qr_issuer: TicketQRIssuer = Depends(get_qr_issuer),
):
    try:
        booking = BookingService(db, settings).cancel_booking(booking_id, request.customer_id)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking, qr_issuer)


@router.post("/bookings/{booking_id}/refund", response_model=RefundResponse)
def refund_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        refunded = BookingService(db, settings, gateway=gateway).refund_booking(booking_id)
    except BookingNotFoundError as exc:
        raise _http_error(exc) from exc

    if not refunded:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This booking cannot be refunded.",
        )
    return RefundResponse(booking_id=booking_id, refunded=True)


@router.post("/payments/razorpay/webhook", response_model=WebhookAckResponse)
def razorpay_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
    qr_issuer: TicketQRIssuer = Depends(get_qr_issuer),
    notifier: Notifier = Depends(get_notifier),
):
    if not settings.razorpay_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured. Set RAZORPAY_WEBHOOK_SECRET.",
        )
    try:
        raw_text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid UTF-8",
        ) from exc

    if not x_razorpay_signature or not gateway.verify_webhook_signature(
        raw_text,
        x_razorpay_signature,
        settings.razorpay_webhook_secret,
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(raw_text)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid JSON",
        ) from exc

    event_type = payload.get("event", "")
    payload_hash = _hash_webhook_payload(body)
    delivery_id = x_razorpay_event_id or payload_hash

    record = db.execute(
        select(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.provider == WEBHOOK_PROVIDER)
        .where(PaymentWebhookEvent.delivery_id == delivery_id)
    ).scalar_one_or_none()
    if record and record.status in _SETTLED_WEBHOOK_STATUSES:
        logger.info("Duplicate webhook delivery %s (%s) ignored", delivery_id, event_type)
        return WebhookAckResponse(status="duplicate", event=event_type)

    order_id, booking_id = _webhook_target(db, payload)

    if not record:
        record = PaymentWebhookEvent(
            provider=WEBHOOK_PROVIDER,
            delivery_id=delivery_id,
            event_type=event_type,
            transaction_id=order_id,
            booking_id=booking_id,
            payload_hash=payload_hash,
            status="RECEIVED",
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Webhook delivery %s is already being processed", delivery_id)
            return WebhookAckResponse(status="duplicate", event=event_type)

    outcome = "IGNORED"
    if event_type in CONFIRMING_WEBHOOK_EVENTS and order_id and booking_id:
        service = PaymentConfirmationService(db, gateway, qr_issuer, notifier, settings)
        result = service.confirm_payment(order_id, booking_id)
        outcome = "PROCESSED" if result else "FAILED"
    elif event_type in FAILING_WEBHOOK_EVENTS and order_id:
        error = payload.get("payload", {}).get("payment", {}).get("entity", {}).get("error_description")
        service = PaymentConfirmationService(db, gateway, qr_issuer, notifier, settings)
        service.mark_payment_failed(order_id, reason=error)
        outcome = "PROCESSED"
    else:
        logger.info("Webhook %s (%s) has nothing to apply", delivery_id, event_type)

    record.status = outcome
    db.add(record)
    return WebhookAckResponse(status=outcome.lower(), event=event_type)
