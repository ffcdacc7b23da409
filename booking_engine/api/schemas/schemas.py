from decimal import Decimal

from pydantic import BaseModel, Field


class TierSelectionRequest(BaseModel):
    price_tier_id: str
    quantity: int = Field(gt=0)


class CheckoutRequest(BaseModel):
    customer_id: str
    selections: list[TierSelectionRequest] = Field(min_length=1)
    discount_code: str | None = None


class CheckoutResponse(BaseModel):
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


class TierOptionResponse(BaseModel):
    tier_id: str
    category: str
    description: str | None = None
    price: Decimal
    available: int
    max_quantity: int | None = None


class CheckoutOptionsResponse(BaseModel):
    event_id: str
    title: str
    starts_at: str
    venue_name: str | None = None
    tiers: list[TierOptionResponse]


class TierAvailabilityResponse(BaseModel):
    tier_id: str
    available: int


class DiscountValidateRequest(BaseModel):
    code: str = Field(min_length=1)
    event_id: str | None = None


class DiscountValidateResponse(BaseModel):
    valid: bool
    message: str
    code: str | None = None
    type: str | None = None
    value: Decimal | None = None


class ConfirmPaymentRequest(BaseModel):
    transaction_id: str


class TicketIssueResponse(BaseModel):
    ticket_id: str
    ticket_number: str
    qr_issued: bool


class ConfirmPaymentResponse(BaseModel):
    booking_id: str
    confirmed: bool
    already_confirmed: bool
    message: str
    loyalty_points_awarded: int = 0
    notification_sent: bool = False
    tickets: list[TicketIssueResponse] = []


class TicketResponse(BaseModel):
    ticket_number: str
    category: str
    price: Decimal
    is_paid: bool
    is_used: bool
    qr_code_url: str | None = None


class BookingResponse(BaseModel):
    booking_id: str
    reference: str
    status: str
    event_id: str
    event_title: str | None = None
    subtotal: Decimal
    discount_amount: Decimal
    fees: Decimal
    total: Decimal
    payment_status: str | None = None
    created_at: str
    tickets: list[TicketResponse] = []


class CancelBookingRequest(BaseModel):
    customer_id: str


class RefundResponse(BaseModel):
    booking_id: str
    refunded: bool


class WebhookAckResponse(BaseModel):
    status: str
    event: str | None = None
