from datetime import datetime

from sqlalchemy.orm import Session

from booking_engine.domain.clock import utcnow
from booking_engine.domain.discounts import check_discount
from booking_engine.domain.pricing import DiscountTerms
from booking_engine.infrastructure.repositories.discount_repository import DiscountRepository


class DiscountValidator:
    """Looks a code up and checks it; never changes the usage counter."""

    def __init__(self, db: Session):
        self.discount_repository = DiscountRepository(db)

    def validate(
        self,
        code: str,
        event_id: str | None,
        now: datetime | None = None,
    ) -> DiscountTerms:
        discount = self.discount_repository.get_by_code(code)
        return check_discount(discount, event_id, now or utcnow())
