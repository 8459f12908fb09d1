from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from ticketing.domain.state_machine import EventCategory, EventStatus
from ticketing.infrastructure.db.models import Base, Event
from ticketing.infrastructure.db.session import engine, get_db_session

DEMO_ORGANIZER_ID = "admin-demo"


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_events(db) -> None:
    event_defs = [
        {
            "title": "Sunidhi Chauhan Live Concert",
            "description": "An evening of Bollywood hits performed live.",
            "category": EventCategory.CONCERT,
            "date": _dt(days_from_now=10, hour=19, minute=30),
            "start_time": "19:30",
            "end_time": "22:30",
            "venue": {
                "name": "Indira Gandhi Arena",
                "address": "IP Estate",
                "city": "New Delhi",
                "state": "Delhi",
                "zip_code": "110002",
                "capacity": 600,
            },
            "price": Decimal("1800.00"),
            "total_tickets": 500,
            "tags": ["music", "live"],
        },
        {
            "title": "Python Developers Conference",
            "description": "Two tracks of talks on packaging, typing and async.",
            "category": EventCategory.CONFERENCE,
            "date": _dt(days_from_now=21, hour=9, minute=0),
            "start_time": "09:00",
            "end_time": "17:00",
            "venue": {
                "name": "Bangalore International Exhibition Centre",
                "address": "Tumkur Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "zip_code": "562123",
                "capacity": 1200,
            },
            "price": Decimal("2500.00"),
            "total_tickets": 1000,
            "tags": ["tech", "python"],
        },
        {
            "title": "Last Seat Standing",
            "description": "Single-ticket event for exercising sold-out flows.",
            "category": EventCategory.OTHER,
            "date": _dt(days_from_now=3, hour=18, minute=0),
            "start_time": "18:00",
            "end_time": "19:00",
            "venue": {
                "name": "Studio 1",
                "address": "MG Road",
                "city": "Pune",
                "state": "Maharashtra",
                "zip_code": "411001",
                "capacity": 1,
            },
            "price": Decimal("99.00"),
            "total_tickets": 1,
            "tags": [],
        },
    ]

    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            # Keep counters of an already-seeded event; only refresh the schedule.
            existing.date = item["date"]
            existing.start_time = item["start_time"]
            existing.end_time = item["end_time"]
            continue

        venue = item["venue"]
        db.add(
            Event(
                title=item["title"],
                description=item["description"],
                category=item["category"],
                date=item["date"],
                start_time=item["start_time"],
                end_time=item["end_time"],
                venue_name=venue["name"],
                venue_address=venue["address"],
                venue_city=venue["city"],
                venue_state=venue["state"],
                venue_zip_code=venue["zip_code"],
                venue_capacity=venue["capacity"],
                price=item["price"],
                total_tickets=item["total_tickets"],
                available_tickets=item["total_tickets"],
                status=EventStatus.PUBLISHED,
                organizer_id=DEMO_ORGANIZER_ID,
                tags=item["tags"],
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_events(db)
    print("Demo events seeded successfully.")


if __name__ == "__main__":
    main()
