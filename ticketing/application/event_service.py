import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ticketing.domain.exceptions import (
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from ticketing.domain.identity import Caller
from ticketing.domain.policy import as_utc, is_valid_time, time_to_minutes, utc_now
from ticketing.infrastructure.db.models import Booking, Event
from ticketing.infrastructure.repositories.booking_repository import BookingRepository
from ticketing.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)

_VENUE_FIELDS = ("name", "address", "city", "state", "zip_code", "capacity")


class EventService:
    """Event management. Never touches available_tickets directly."""

    def __init__(self, db: Session):
        self.db = db
        self.event_repository = EventRepository(db)
        self.booking_repository = BookingRepository(db)

    def create_event(self, data: dict, caller: Caller) -> Event:
        date = as_utc(data["date"])
        if date <= utc_now():
            raise InvalidArgumentError("Event date must be in the future")
        _check_times(data["start_time"], data["end_time"])

        total_tickets = data["total_tickets"]
        available_tickets = data.get("available_tickets")
        if available_tickets is None:
            available_tickets = total_tickets
        if not 0 <= available_tickets <= total_tickets:
            raise InvalidArgumentError("Available tickets must be between 0 and total tickets")

        venue = data["venue"]
        event = Event(
            title=data["title"],
            description=data["description"],
            category=data["category"],
            date=date,
            start_time=data["start_time"],
            end_time=data["end_time"],
            venue_name=venue["name"],
            venue_address=venue["address"],
            venue_city=venue["city"],
            venue_state=venue["state"],
            venue_zip_code=venue["zip_code"],
            venue_capacity=venue["capacity"],
            price=data["price"],
            total_tickets=total_tickets,
            available_tickets=available_tickets,
            organizer_id=caller.user_id,
            tags=list(data.get("tags") or []),
        )
        if data.get("status") is not None:
            event.status = data["status"]

        self.event_repository.add(event)
        self.db.commit()
        self.db.refresh(event)
        logger.info("Event %s created by %s with %s tickets", event.id, caller.user_id, event.total_tickets)
        return event

    def get_event(self, event_id: str) -> Event:
        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError(f"Event not found with id of {event_id}")
        return event

    def list_events(self, upcoming_only: bool = True) -> list[Event]:
        return self.event_repository.list_published(upcoming_only=upcoming_only)

    def update_event(self, event_id: str, changes: dict, caller: Caller) -> Event:
        event = self.get_event(event_id)
        self._ensure_can_manage(event, caller, "update")

        if changes.get("date") is not None:
            changes["date"] = as_utc(changes["date"])
            if changes["date"] <= utc_now():
                raise InvalidArgumentError("Event date must be in the future")

        if changes.get("start_time") or changes.get("end_time"):
            _check_times(
                changes.get("start_time") or event.start_time,
                changes.get("end_time") or event.end_time,
            )

        total_tickets = changes.pop("total_tickets", None)
        venue = changes.pop("venue", None) or {}
        for field in _VENUE_FIELDS:
            if venue.get(field) is not None:
                setattr(event, f"venue_{field}", venue[field])

        for field, value in changes.items():
            if value is not None:
                setattr(event, field, value)

        if total_tickets is not None and total_tickets != event.total_tickets:
            self.db.flush()
            if not self.event_repository.resize(event.id, total_tickets):
                self.db.rollback()
                raise InvalidStateError(
                    f"Total tickets cannot drop below the {event.sold_tickets} tickets already sold"
                )

        self.db.commit()
        self.db.refresh(event)
        logger.info("Event %s updated by %s", event.id, caller.user_id)
        return event

    def delete_event(self, event_id: str, caller: Caller) -> None:
        event = self.get_event(event_id)
        self._ensure_can_manage(event, caller, "delete")

        if self.booking_repository.has_paid_bookings(event.id):
            raise InvalidStateError("Cannot delete event with confirmed bookings")

        # Bookings are never hard-deleted, so any history pins the event.
        has_history = self.db.execute(
            select(Booking.id).where(Booking.event_id == event.id).limit(1)
        ).first()
        if has_history:
            raise InvalidStateError(
                "Event has booking history; set its status to cancelled instead"
            )

        self.event_repository.delete(event)
        self.db.commit()
        logger.info("Event %s deleted by %s", event_id, caller.user_id)

    @staticmethod
    def _ensure_can_manage(event: Event, caller: Caller, action: str) -> None:
        if event.organizer_id != caller.user_id and not caller.is_admin:
            raise UnauthorizedError(
                f"User {caller.user_id} is not authorized to {action} this event"
            )


def _check_times(start_time: str, end_time: str) -> None:
    if not (is_valid_time(start_time) and is_valid_time(end_time)):
        raise InvalidArgumentError("Please provide valid time in HH:MM format")
    if time_to_minutes(start_time) >= time_to_minutes(end_time):
        raise InvalidArgumentError("End time must be after start time")
