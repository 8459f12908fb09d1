# ticketing/infrastructure/repositories/booking_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import exists, select, update

from ticketing.infrastructure.db.models import Booking
from ticketing.domain.state_machine import BookingStatus, PaymentStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_id(self, booking_id: str) -> Booking | None:
        """
        SELECT ... FOR UPDATE
        Serializes cancel and check-in on the same booking.
        """

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def transition_status(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **values,
    ) -> bool:
        """
        UPDATE bookings SET booking_status = :to WHERE id = :id AND booking_status = :from

        Backs up the row lock on stores that ignore FOR UPDATE; rowcount 0
        means another request moved the booking first.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.booking_status == from_status)
            .values(booking_status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def get_by_session_id(
        self,
        session_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.payment_session_id == session_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def insert(self, booking: Booking) -> Booking:
        """
        Adds and flushes the booking. Unique-constraint violations on the
        session id or the reference surface here as IntegrityError.
        """
        self.db.add(booking)
        self.db.flush()
        return booking

    def list_for_user(self, user_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_attendees(self, event_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.event_id == event_id)
            .where(Booking.payment_status == PaymentStatus.PAID)
            .where(
                Booking.booking_status.in_(
                    [BookingStatus.CONFIRMED, BookingStatus.ATTENDED]
                )
            )
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def has_paid_bookings(self, event_id: str) -> bool:
        stmt = select(
            exists().where(
                Booking.event_id == event_id,
                Booking.payment_status == PaymentStatus.PAID,
            )
        )
        return bool(self.db.execute(stmt).scalar())
