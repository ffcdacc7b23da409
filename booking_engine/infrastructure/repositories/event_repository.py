# booking_engine/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from booking_engine.infrastructure.db.models import Customer, Event


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()


class CustomerRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, customer_id: str) -> Customer | None:
        stmt = select(Customer).where(Customer.id == customer_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def set_gateway_customer_id(self, customer: Customer, gateway_customer_id: str) -> None:
        customer.gateway_customer_id = gateway_customer_id
