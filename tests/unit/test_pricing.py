# tests/unit/test_pricing.py

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from booking_engine.domain.exceptions import InvalidSelectionError
from booking_engine.domain.pricing import (
    DiscountTerms,
    DiscountType,
    TierSelection,
    compute_discount,
    compute_subtotal,
    merge_selections,
    price_order,
    validate_selection,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _tier(**overrides):
    values = {
        "id": "tier-general",
        "event_id": "event-1",
        "category": "General",
        "price": Decimal("100.00"),
        "is_active": True,
        "min_quantity": None,
        "max_quantity": None,
        "valid_from": None,
        "valid_to": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


# ---------------------
# SUBTOTAL
# ---------------------

def test_subtotal_sums_price_times_quantity():
    general = _tier()
    vip = _tier(id="tier-vip", category="VIP", price=Decimal("450.50"))
    tiers = {general.id: general, vip.id: vip}

    subtotal = compute_subtotal(
        tiers,
        [TierSelection("tier-general", 3), TierSelection("tier-vip", 2)],
        event_id="event-1",
    )

    assert subtotal == Decimal("1201.00")


def test_empty_selection_rejected():
    with pytest.raises(InvalidSelectionError):
        compute_subtotal({}, [])


def test_unknown_tier_rejected():
    with pytest.raises(InvalidSelectionError):
        compute_subtotal({}, [TierSelection("missing", 1)])


def test_duplicate_tiers_are_merged():
    merged = merge_selections(
        [TierSelection("a", 1), TierSelection("b", 2), TierSelection("a", 3)]
    )
    assert merged == [TierSelection("a", 4), TierSelection("b", 2)]


# ---------------------
# SELECTION RULES
# ---------------------

def test_tier_from_other_event_rejected():
    with pytest.raises(InvalidSelectionError):
        validate_selection(_tier(event_id="event-2"), 1, event_id="event-1")


def test_inactive_tier_rejected():
    with pytest.raises(InvalidSelectionError):
        validate_selection(_tier(is_active=False), 1)


@pytest.mark.parametrize("quantity", [0, -1])
def test_non_positive_quantity_rejected(quantity):
    with pytest.raises(InvalidSelectionError):
        validate_selection(_tier(), quantity)


def test_min_and_max_quantity():
    tier = _tier(min_quantity=2, max_quantity=4)

    validate_selection(tier, 2)
    validate_selection(tier, 4)
    with pytest.raises(InvalidSelectionError):
        validate_selection(tier, 1)
    with pytest.raises(InvalidSelectionError):
        validate_selection(tier, 5)


def test_global_cap_applies_when_tier_has_no_max():
    validate_selection(_tier(), 10, max_per_tier=10)
    with pytest.raises(InvalidSelectionError):
        validate_selection(_tier(), 11, max_per_tier=10)


def test_tier_validity_window():
    tier = _tier(valid_from=NOW + timedelta(days=1))
    with pytest.raises(InvalidSelectionError):
        validate_selection(tier, 1, now=NOW)

    expired = _tier(valid_to=NOW - timedelta(minutes=1))
    with pytest.raises(InvalidSelectionError):
        validate_selection(expired, 1, now=NOW)

    validate_selection(_tier(valid_from=NOW - timedelta(days=1), valid_to=NOW + timedelta(days=1)), 1, now=NOW)


# ---------------------
# DISCOUNTS & TOTALS
# ---------------------

def test_percent_discount():
    terms = DiscountTerms(code="SAVE10", type=DiscountType.PERCENT, value=Decimal("10"))

    breakdown = price_order(Decimal("1000"), terms)

    assert breakdown.discount_amount == Decimal("100.00")
    assert breakdown.total == Decimal("900.00")


def test_amount_discount_is_raw_value():
    terms = DiscountTerms(code="FLAT200", type=DiscountType.AMOUNT, value=Decimal("200"))
    assert compute_discount(Decimal("150"), terms) == Decimal("200.00")


def test_amount_discount_larger_than_subtotal_clamps_total_to_zero():
    terms = DiscountTerms(code="FLAT200", type=DiscountType.AMOUNT, value=Decimal("200"))

    breakdown = price_order(Decimal("150"), terms)

    assert breakdown.discount_amount == Decimal("150.00")
    assert breakdown.total == Decimal("0.00")


def test_no_discount():
    breakdown = price_order(Decimal("250"))
    assert breakdown.discount_amount == Decimal("0.00")
    assert breakdown.total == Decimal("250.00")


def test_fees_added_before_discount():
    terms = DiscountTerms(code="SAVE10", type=DiscountType.PERCENT, value=Decimal("10"))

    breakdown = price_order(
        Decimal("100"),
        terms,
        service_fee_rate=Decimal("0.08"),
        processing_fee=Decimal("2.99"),
    )

    assert breakdown.fees == Decimal("10.99")
    assert breakdown.total == Decimal("100.99")
