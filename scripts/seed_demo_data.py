from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from booking_engine.domain.pricing import DiscountType
from booking_engine.infrastructure.db.models import Base, Customer, Discount, Event, EventPrice
from booking_engine.infrastructure.db.session import engine, get_db_session


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_customer(db) -> Customer:
    email = "demo.customer@example.com"
    customer = db.execute(select(Customer).where(Customer.email == email)).scalar_one_or_none()
    if customer:
        return customer

    customer = Customer(email=email, full_name="Demo Customer")
    db.add(customer)
    db.flush()
    return customer


def seed_events(db) -> list[Event]:
    event_defs = [
        {
            "title": "Sunidhi Chauhan Live Concert",
            "venue_name": "Indira Gandhi Arena, New Delhi",
            "starts_at": _dt(days_from_now=10, hour=19, minute=30),
            "tiers": [
                {"category": "Regular", "price": "1800", "stock": 400},
                {"category": "VIP", "price": "4500", "stock": 120, "max_quantity": 4},
            ],
        },
        {
            "title": "Holi Festival 2026",
            "venue_name": "Jawaharlal Nehru Stadium Grounds, Delhi",
            "starts_at": _dt(days_from_now=15, hour=11, minute=0),
            "tiers": [
                {"category": "General", "price": "1200", "stock": 700},
                {"category": "Premium", "price": "2800", "stock": 180},
            ],
        },
    ]

    events = []
    for item in event_defs:
        event = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if event:
            event.venue_name = item["venue_name"]
            event.starts_at = item["starts_at"]
            events.append(event)
            continue

        event = Event(
            title=item["title"],
            venue_name=item["venue_name"],
            starts_at=item["starts_at"],
            is_published=True,
            status="Published",
            ticket_sales_start=datetime.now(timezone.utc) - timedelta(days=1),
            ticket_sales_end=item["starts_at"],
        )
        db.add(event)
        db.flush()

        for tier in item["tiers"]:
            db.add(
                EventPrice(
                    event_id=event.id,
                    category=tier["category"],
                    price=Decimal(tier["price"]),
                    stock=tier["stock"],
                    max_quantity=tier.get("max_quantity"),
                )
            )
        events.append(event)
    return events


def seed_discounts(db) -> None:
    existing = db.execute(select(Discount).where(Discount.code == "SAVE10")).scalar_one_or_none()
    if existing:
        existing.is_active = True
        return

    now = datetime.now(timezone.utc)
    db.add(
        Discount(
            code="SAVE10",
            type=DiscountType.PERCENT,
            value=Decimal("10"),
            valid_from=now - timedelta(days=1),
            valid_to=now + timedelta(days=30),
            usage_limit=100,
            description="10% off any event",
        )
    )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        customer = seed_customer(db)
        events = seed_events(db)
        seed_discounts(db)
        customer_id, event_count = customer.id, len(events)
    print(f"Seed complete: customer {customer_id}, {event_count} events, discount SAVE10.")


if __name__ == "__main__":
    main()
