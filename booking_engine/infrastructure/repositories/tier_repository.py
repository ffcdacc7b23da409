# booking_engine/infrastructure/repositories/tier_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update, func

from booking_engine.infrastructure.db.models import EventPrice, Ticket
from booking_engine.domain.exceptions import InventoryExhaustedError


class TierRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, tier_id: str) -> EventPrice | None:
        stmt = select(EventPrice).where(EventPrice.id == tier_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_event(self, event_id: str, active_only: bool = False) -> list[EventPrice]:
        stmt = select(EventPrice).where(EventPrice.event_id == event_id)
        if active_only:
            stmt = stmt.where(EventPrice.is_active.is_(True))
        stmt = stmt.order_by(EventPrice.price, EventPrice.category)
        return list(self.db.execute(stmt).scalars().all())

    def lock_tiers(self, tier_ids: list[str]) -> dict[str, EventPrice]:
        """
        SELECT ... FOR UPDATE
        Serializes concurrent checkouts against the same tiers.
        Rows are locked in id order so two checkouts never deadlock.
        """
        if not tier_ids:
            return {}

        stmt = (
            select(EventPrice)
            .where(EventPrice.id.in_(sorted(set(tier_ids))))
            .order_by(EventPrice.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {tier.id: tier for tier in self.db.execute(stmt).scalars().all()}

    def issued_ticket_count(self, tier_id: str) -> int:
        stmt = select(func.count(Ticket.id)).where(Ticket.price_tier_id == tier_id)
        return self.db.execute(stmt).scalar_one()

    def availability(self, tier_id: str) -> int:
        """
        Stock minus every ticket row issued against the tier, paid or not.
        A pending booking keeps its tickets reserved.
        """
        tier = self.get_by_id(tier_id)
        if not tier:
            raise ValueError("Price tier not found")
        return max(tier.stock - self.issued_ticket_count(tier_id), 0)

    def reserve(self, tier_id: str, quantity: int) -> None:
        """
        Conditional update: only succeeds while the tier still has
        `quantity` tickets left. Runs in the caller's transaction, so the
        reservation commits or rolls back together with the ticket rows.
        """
        stmt = (
            update(EventPrice)
            .where(EventPrice.id == tier_id)
            .where(EventPrice.issued_count + quantity <= EventPrice.stock)
            .values(issued_count=EventPrice.issued_count + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            raise InventoryExhaustedError()
