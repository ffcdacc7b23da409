# booking_engine/infrastructure/repositories/discount_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update, or_

from booking_engine.infrastructure.db.models import Discount
from booking_engine.domain.discounts import normalize_code
from booking_engine.domain.exceptions import DiscountError, DiscountRejection


class DiscountRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, code: str) -> Discount | None:
        stmt = (
            select(Discount)
            .where(Discount.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def consume(self, discount_id: str) -> None:
        """
        Increments used_count unless the usage limit has been hit in the
        meantime by a concurrent checkout.
        """
        stmt = (
            update(Discount)
            .where(Discount.id == discount_id)
            .where(
                or_(
                    Discount.usage_limit.is_(None),
                    Discount.used_count < Discount.usage_limit,
                )
            )
            .values(used_count=Discount.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise DiscountError(DiscountRejection.LIMIT_REACHED)
