from datetime import datetime

from booking_engine.domain.clock import as_utc
from booking_engine.domain.exceptions import DiscountError, DiscountRejection
from booking_engine.domain.pricing import DiscountTerms, DiscountType


def normalize_code(code: str) -> str:
    return code.strip().upper()


def check_discount(discount, event_id: str | None, now: datetime) -> DiscountTerms:
    """
    Checks a discount row against the booking context and returns its
    pricing terms. Does not touch the usage counter.
    """
    if discount is None:
        raise DiscountError(DiscountRejection.NOT_FOUND)
    if not discount.is_active:
        raise DiscountError(DiscountRejection.INACTIVE)

    if now < as_utc(discount.valid_from) or now > as_utc(discount.valid_to):
        raise DiscountError(DiscountRejection.EXPIRED)

    if discount.usage_limit is not None and discount.used_count >= discount.usage_limit:
        raise DiscountError(DiscountRejection.LIMIT_REACHED)

    if discount.event_id is not None and discount.event_id != event_id:
        raise DiscountError(DiscountRejection.EVENT_MISMATCH)

    return DiscountTerms(
        code=discount.code,
        type=DiscountType(discount.type),
        value=discount.value,
        discount_id=discount.id,
    )
