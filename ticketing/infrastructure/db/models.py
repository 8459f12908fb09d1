# ticketing/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event as orm_event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from ticketing.infrastructure.db.session import Base
from ticketing.domain.policy import (
    MAX_REFUND_REASON_LENGTH,
    MAX_TICKETS_PER_BOOKING,
    MIN_TICKETS_PER_BOOKING,
    as_utc,
    generate_booking_reference,
    utc_now,
)
from ticketing.domain.state_machine import (
    BookingStatus,
    EventCategory,
    EventStatus,
    PaymentStatus,
)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Event(Base):
    """
    Ticketed event and its inventory counters.
    available_tickets is only moved by conditional updates in EventRepository.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    category: Mapped[EventCategory] = mapped_column(
        Enum(EventCategory, name="event_category", values_callable=_enum_values),
        nullable=False,
    )
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    venue_name: Mapped[str] = mapped_column(String(128), nullable=False)
    venue_address: Mapped[str] = mapped_column(String(255), nullable=False)
    venue_city: Mapped[str] = mapped_column(String(64), nullable=False)
    venue_state: Mapped[str] = mapped_column(String(64), nullable=False)
    venue_zip_code: Mapped[str] = mapped_column(String(16), nullable=False)
    venue_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    available_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, name="event_status", values_callable=_enum_values),
        nullable=False,
        default=EventStatus.PUBLISHED,
    )
    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_event_price_nonnegative"),
        CheckConstraint("total_tickets >= 1", name="ck_event_total_tickets_positive"),
        CheckConstraint("available_tickets >= 0", name="ck_event_available_nonnegative"),
        CheckConstraint("available_tickets <= total_tickets", name="ck_event_available_lte_total"),
        CheckConstraint("venue_capacity >= 1", name="ck_event_venue_capacity_positive"),
        Index("ix_events_date_category_status", "date", "category", "status"),
        Index("ix_events_venue_city_state", "venue_city", "venue_state"),
    )

    @property
    def sold_tickets(self) -> int:
        return self.total_tickets - self.available_tickets

    @property
    def is_sold_out(self) -> bool:
        return self.available_tickets == 0

    @property
    def is_upcoming(self) -> bool:
        return as_utc(self.date) > utc_now()

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, title={self.title}, "
            f"available={self.available_tickets}/{self.total_tickets})>"
        )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_reference: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    ticket_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    booking_status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.CONFIRMED,
    )
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default="razorpay")
    payment_session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attendee_name: Mapped[str] = mapped_column(String(128), nullable=False)
    attendee_email: Mapped[str] = mapped_column(String(255), nullable=False)
    attendee_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    checked_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    event: Mapped[Event] = relationship("Event")

    __table_args__ = (
        UniqueConstraint(
            "payment_session_id",
            name="uq_booking_payment_session_id",
        ),
        UniqueConstraint(
            "booking_reference",
            name="uq_booking_reference",
        ),
        CheckConstraint(
            f"ticket_quantity >= {MIN_TICKETS_PER_BOOKING} "
            f"AND ticket_quantity <= {MAX_TICKETS_PER_BOOKING}",
            name="ck_booking_ticket_quantity_range",
        ),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_amount_nonnegative"),
        CheckConstraint("refund_amount >= 0", name="ck_booking_refund_amount_nonnegative"),
        Index("ix_bookings_user_event", "user_id", "event_id"),
        Index("ix_bookings_status", "payment_status", "booking_status"),
    )

    @property
    def price_per_ticket(self) -> Decimal:
        return Decimal(self.total_amount) / self.ticket_quantity

    @property
    def is_active(self) -> bool:
        return (
            self.booking_status == BookingStatus.CONFIRMED
            and self.payment_status == PaymentStatus.PAID
        )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, reference={self.booking_reference}, "
            f"booking_status={self.booking_status}, payment_status={self.payment_status})>"
        )


@orm_event.listens_for(Booking, "before_insert")
def _backfill_booking_reference(mapper, connection, target: Booking) -> None:
    if not target.booking_reference:
        target.booking_reference = generate_booking_reference()
    if target.refund_reason is not None:
        target.refund_reason = target.refund_reason[:MAX_REFUND_REASON_LENGTH]
