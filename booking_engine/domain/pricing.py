# booking_engine/domain/pricing.py

"""
Inventory & pricing ledger rules.

Tier objects are duck-typed: anything exposing ``id``, ``event_id``,
``category``, ``price``, ``is_active``, ``min_quantity``, ``max_quantity``,
``valid_from`` and ``valid_to`` works (the ORM ``EventPrice`` does).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Mapping

from booking_engine.domain.clock import as_utc
from booking_engine.domain.exceptions import InvalidSelectionError

CENT = Decimal("0.01")


class DiscountType(str, Enum):
    PERCENT = "Percent"
    AMOUNT = "Amount"


@dataclass(frozen=True)
class DiscountTerms:
    code: str
    type: DiscountType
    value: Decimal
    discount_id: str | None = None


@dataclass(frozen=True)
class TierSelection:
    price_tier_id: str
    quantity: int


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount_amount: Decimal
    fees: Decimal
    total: Decimal


def to_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def merge_selections(selections: Iterable[TierSelection]) -> list[TierSelection]:
    """Collapse repeated tiers into one selection each, keeping first-seen order."""
    merged: dict[str, int] = {}
    for selection in selections:
        merged[selection.price_tier_id] = merged.get(selection.price_tier_id, 0) + selection.quantity
    return [TierSelection(price_tier_id=tier_id, quantity=qty) for tier_id, qty in merged.items()]


def effective_max_quantity(tier, max_per_tier: int | None) -> int | None:
    limits = [limit for limit in (tier.max_quantity, max_per_tier) if limit is not None]
    return min(limits) if limits else None


def validate_selection(
    tier,
    quantity: int,
    event_id: str | None = None,
    now: datetime | None = None,
    max_per_tier: int | None = None,
) -> None:
    if tier is None:
        raise InvalidSelectionError("The selected ticket type does not exist.")
    if event_id is not None and tier.event_id != event_id:
        raise InvalidSelectionError("The selected ticket type does not belong to this event.")
    if not tier.is_active:
        raise InvalidSelectionError(f"Tickets for '{tier.category}' are not on sale.")
    if quantity <= 0:
        raise InvalidSelectionError("Ticket quantity must be greater than zero.")
    if tier.min_quantity is not None and quantity < tier.min_quantity:
        raise InvalidSelectionError(
            f"At least {tier.min_quantity} '{tier.category}' tickets must be purchased."
        )

    max_quantity = effective_max_quantity(tier, max_per_tier)
    if max_quantity is not None and quantity > max_quantity:
        raise InvalidSelectionError(
            f"At most {max_quantity} '{tier.category}' tickets can be purchased per order."
        )

    if now is not None:
        valid_from = as_utc(tier.valid_from)
        valid_to = as_utc(tier.valid_to)
        if (valid_from and now < valid_from) or (valid_to and now > valid_to):
            raise InvalidSelectionError(f"Tickets for '{tier.category}' are not on sale.")


def compute_subtotal(
    tiers: Mapping[str, object],
    selections: Iterable[TierSelection],
    event_id: str | None = None,
    now: datetime | None = None,
    max_per_tier: int | None = None,
) -> Decimal:
    """
    Sum of price * quantity over the selections.
    Raises InvalidSelectionError on the first selection that fails validation.
    """
    selections = list(selections)
    if not selections:
        raise InvalidSelectionError("Select at least one ticket.")

    subtotal = Decimal("0")
    for selection in selections:
        tier = tiers.get(selection.price_tier_id)
        validate_selection(
            tier,
            selection.quantity,
            event_id=event_id,
            now=now,
            max_per_tier=max_per_tier,
        )
        subtotal += Decimal(tier.price) * selection.quantity
    return to_money(subtotal)


def compute_discount(subtotal: Decimal, terms: DiscountTerms | None) -> Decimal:
    """
    Percent discounts take value% of the subtotal; Amount discounts take
    the flat value as-is, even when it exceeds the subtotal.
    """
    if terms is None:
        return Decimal("0.00")
    if terms.type is DiscountType.PERCENT:
        return to_money(subtotal * Decimal(terms.value) / Decimal(100))
    if terms.type is DiscountType.AMOUNT:
        return to_money(terms.value)
    raise ValueError(f"Unsupported discount type: {terms.type!r}")


def price_order(
    subtotal: Decimal,
    terms: DiscountTerms | None = None,
    service_fee_rate: Decimal = Decimal("0"),
    processing_fee: Decimal = Decimal("0"),
) -> PriceBreakdown:
    # Discounts never exceed the subtotal, so the total never drops below the fees.
    discount_amount = min(compute_discount(subtotal, terms), to_money(subtotal))
    fees = to_money(subtotal * Decimal(service_fee_rate) + Decimal(processing_fee))
    total = to_money(subtotal + fees - discount_amount)
    return PriceBreakdown(
        subtotal=to_money(subtotal),
        discount_amount=discount_amount,
        fees=fees,
        total=total,
    )
