# booking_engine/infrastructure/repositories/loyalty_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from booking_engine.infrastructure.db.models import LoyaltyPoint


class LoyaltyRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_for_customer(self, customer_id: str) -> LoyaltyPoint | None:
        stmt = select(LoyaltyPoint).where(LoyaltyPoint.customer_id == customer_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def award(
        self,
        customer_id: str,
        points: int,
        description: str,
        now: datetime,
    ) -> None:
        """
        Adds points to the customer's balance in one statement; the row is
        created on the first award. Commits.
        """
        if self._increment(customer_id, points, description, now):
            self.db.commit()
            return

        self.db.add(
            LoyaltyPoint(
                customer_id=customer_id,
                points=points,
                description=description,
                last_updated=now,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Another confirmation for the same customer created the row first.
            self.db.rollback()
            if not self._increment(customer_id, points, description, now):
                raise
            self.db.commit()

    def _increment(
        self,
        customer_id: str,
        points: int,
        description: str,
        now: datetime,
    ) -> bool:
        stmt = (
            update(LoyaltyPoint)
            .where(LoyaltyPoint.customer_id == customer_id)
            .values(
                points=LoyaltyPoint.points + points,
                description=description,
                last_updated=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
