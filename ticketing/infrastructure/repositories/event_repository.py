# ticketing/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from ticketing.infrastructure.db.models import Event
from ticketing.domain.policy import utc_now
from ticketing.domain.state_machine import EventStatus


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        # Counters move through bulk UPDATEs; always reload them from the row.
        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_published(self, upcoming_only: bool = True) -> list[Event]:
        stmt = select(Event).where(Event.status == EventStatus.PUBLISHED)
        if upcoming_only:
            stmt = stmt.where(Event.date > utc_now())
        stmt = stmt.order_by(Event.date)
        return list(self.db.execute(stmt).scalars().all())

    def add(self, event: Event) -> Event:
        self.db.add(event)
        self.db.flush()
        return event

    def delete(self, event: Event) -> None:
        self.db.delete(event)
        self.db.flush()

    def reserve(self, event_id: str, quantity: int) -> bool:
        """
        UPDATE events SET available_tickets = available_tickets - :n
        WHERE id = :id AND available_tickets >= :n

        Single conditional statement; concurrent reservations for the same
        event serialize on the row and the loser sees rowcount 0.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.available_tickets >= quantity)
            .values(available_tickets=Event.available_tickets - quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def release(self, event_id: str, quantity: int) -> bool:
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.available_tickets + quantity <= Event.total_tickets)
            .values(available_tickets=Event.available_tickets + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def resize(self, event_id: str, total_tickets: int) -> bool:
        """
        Change total_tickets while keeping the sold count fixed.
        Fails when the new total is below the tickets already sold.
        """
        sold = Event.total_tickets - Event.available_tickets
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(sold <= total_tickets)
            .values(
                available_tickets=total_tickets - sold,
                total_tickets=total_tickets,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1
