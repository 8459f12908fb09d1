from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from ticketing.domain.policy import (
    EMAIL_PATTERN,
    MAX_REFUND_REASON_LENGTH,
    PHONE_PATTERN,
    TIME_PATTERN,
)
from ticketing.domain.state_machine import (
    BookingStatus,
    EventCategory,
    EventStatus,
    PaymentStatus,
)


class AttendeeInfoSchema(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    email: str = Field(pattern=EMAIL_PATTERN.pattern)
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN.pattern)

    @field_validator("phone", mode="before")
    @classmethod
    def _blank_phone_is_none(cls, value):
        return value or None


class CheckoutRequest(BaseModel):
    event_id: str
    # Range is enforced by the engine so the error kind stays InvalidArgument.
    ticket_quantity: int
    attendee_info: AttendeeInfoSchema


class CheckoutResponse(BaseModel):
    session_id: str
    session_url: str


class ConfirmPaymentRequest(BaseModel):
    session_id: str = Field(min_length=1)


class CancelBookingRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=MAX_REFUND_REASON_LENGTH)


class BookingResponse(BaseModel):
    id: str
    booking_reference: str
    user_id: str
    event_id: str
    ticket_quantity: int
    total_amount: Decimal
    currency: str
    price_per_ticket: Decimal
    payment_status: PaymentStatus
    booking_status: BookingStatus
    is_active: bool
    payment_session_id: str
    payment_intent_id: str | None = None
    attendee_name: str
    attendee_email: str
    attendee_phone: str | None = None
    checked_in: bool
    checked_in_at: datetime | None = None
    refund_amount: Decimal
    refund_reason: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class VenueSchema(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    capacity: int = Field(ge=1)


class VenueUpdate(BaseModel):
    name: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    capacity: int | None = Field(default=None, ge=1)


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    category: EventCategory
    date: datetime
    start_time: str = Field(pattern=TIME_PATTERN.pattern)
    end_time: str = Field(pattern=TIME_PATTERN.pattern)
    venue: VenueSchema
    price: Decimal = Field(ge=0, decimal_places=2)
    total_tickets: int = Field(ge=1)
    available_tickets: int | None = Field(default=None, ge=0)
    status: EventStatus | None = None
    tags: list[str] = Field(default_factory=list)


class EventUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, min_length=1, max_length=1000)
    category: EventCategory | None = None
    date: datetime | None = None
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN.pattern)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN.pattern)
    venue: VenueUpdate | None = None
    price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    total_tickets: int | None = Field(default=None, ge=1)
    status: EventStatus | None = None
    tags: list[str] | None = None


class VenueResponse(BaseModel):
    name: str
    address: str
    city: str
    state: str
    zip_code: str
    capacity: int


class EventResponse(BaseModel):
    id: str
    title: str
    description: str
    category: EventCategory
    date: datetime
    start_time: str
    end_time: str
    venue: VenueResponse
    price: Decimal
    total_tickets: int
    available_tickets: int
    sold_tickets: int
    is_sold_out: bool
    is_upcoming: bool
    status: EventStatus
    organizer_id: str
    tags: list[str]

    @classmethod
    def from_event(cls, event) -> "EventResponse":
        return cls(
            id=event.id,
            title=event.title,
            description=event.description,
            category=event.category,
            date=event.date,
            start_time=event.start_time,
            end_time=event.end_time,
            venue=VenueResponse(
                name=event.venue_name,
                address=event.venue_address,
                city=event.venue_city,
                state=event.venue_state,
                zip_code=event.venue_zip_code,
                capacity=event.venue_capacity,
            ),
            price=event.price,
            total_tickets=event.total_tickets,
            available_tickets=event.available_tickets,
            sold_tickets=event.sold_tickets,
            is_sold_out=event.is_sold_out,
            is_upcoming=event.is_upcoming,
            status=event.status,
            organizer_id=event.organizer_id,
            tags=list(event.tags or []),
        )


class WebhookAck(BaseModel):
    received: bool
