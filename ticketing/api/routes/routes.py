import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ticketing.api.deps import (
    get_current_caller,
    get_event_service,
    get_lifecycle_engine,
    require_admin,
)
from ticketing.api.schemas.schemas import (
    BookingResponse,
    CancelBookingRequest,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    EventCreate,
    EventResponse,
    EventUpdate,
    WebhookAck,
)
from ticketing.application.booking_service import BookingLifecycleEngine
from ticketing.application.event_service import EventService
from ticketing.domain.exceptions import (
    ConflictError,
    InsufficientInventoryError,
    InvalidArgumentError,
    InvalidStateError,
    InventoryInconsistencyError,
    NotFoundError,
    SignatureInvalidError,
    TicketingError,
    UnauthorizedError,
    UpstreamFailureError,
)
from ticketing.domain.identity import Caller
from ticketing.infrastructure.payments.gateway import AttendeeInfo

router = APIRouter()
logger = logging.getLogger(__name__)

# Most specific first; PaymentNotCompleted and the session errors inherit.
_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UpstreamFailureError, status.HTTP_502_BAD_GATEWAY),
    (SignatureInvalidError, status.HTTP_400_BAD_REQUEST),
    (InventoryInconsistencyError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def to_http_exception(exc: TicketingError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped_status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped_status
            break
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.kind, "message": exc.message},
    )


@router.get("/health")
def health():
    return {"message": "Ticketing engine is running"}


# -----------------------------
# Bookings
# -----------------------------
@router.post(
    "/api/bookings/create-checkout-session",
    response_model=CheckoutResponse,
)
def create_checkout_session(
    request: CheckoutRequest,
    caller: Caller = Depends(get_current_caller),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    attendee = AttendeeInfo(
        name=request.attendee_info.name,
        email=request.attendee_info.email,
        phone=request.attendee_info.phone,
    )
    try:
        session = engine.initiate_checkout(
            event_id=request.event_id,
            quantity=request.ticket_quantity,
            attendee=attendee,
            caller=caller,
        )
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return CheckoutResponse(
        session_id=session.session_id,
        session_url=session.redirect_url,
    )


@router.post(
    "/api/bookings/confirm-payment",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def confirm_payment(
    request: ConfirmPaymentRequest,
    caller: Caller = Depends(get_current_caller),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    try:
        booking = engine.confirm_payment(request.session_id, caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return BookingResponse.model_validate(booking)


@router.get("/api/bookings/my-bookings", response_model=list[BookingResponse])
def list_my_bookings(
    caller: Caller = Depends(get_current_caller),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    return [
        BookingResponse.model_validate(booking)
        for booking in engine.list_my_bookings(caller)
    ]


@router.post("/api/bookings/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    raw_payload = await request.body()
    try:
        ack = engine.handle_webhook(raw_payload, x_razorpay_signature or "")
    except TicketingError as exc:
        logger.warning("Webhook rejected: %s", exc.message)
        raise to_http_exception(exc) from exc

    return WebhookAck(**ack)


@router.get(
    "/api/bookings/event/{event_id}/attendees",
    response_model=list[BookingResponse],
)
def list_event_attendees(
    event_id: str,
    caller: Caller = Depends(require_admin),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    try:
        bookings = engine.list_event_attendees(event_id, caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return [BookingResponse.model_validate(booking) for booking in bookings]


@router.get("/api/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_current_caller),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    try:
        booking = engine.get_booking(booking_id, caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return BookingResponse.model_validate(booking)


@router.put("/api/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    caller: Caller = Depends(get_current_caller),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    reason = request.reason if request else None
    try:
        booking = engine.cancel_booking(booking_id, caller, reason=reason)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return BookingResponse.model_validate(booking)


@router.put("/api/bookings/{booking_id}/checkin", response_model=BookingResponse)
def check_in(
    booking_id: str,
    caller: Caller = Depends(require_admin),
    engine: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    try:
        booking = engine.check_in(booking_id, caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return BookingResponse.model_validate(booking)


# -----------------------------
# Events
# -----------------------------
@router.get("/api/events", response_model=list[EventResponse])
def list_events(
    upcoming_only: bool = True,
    service: EventService = Depends(get_event_service),
):
    return [EventResponse.from_event(event) for event in service.list_events(upcoming_only)]


@router.get("/api/events/{event_id}", response_model=EventResponse)
def get_event(
    event_id: str,
    service: EventService = Depends(get_event_service),
):
    try:
        event = service.get_event(event_id)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return EventResponse.from_event(event)


@router.post(
    "/api/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_event(
    request: EventCreate,
    caller: Caller = Depends(require_admin),
    service: EventService = Depends(get_event_service),
):
    try:
        event = service.create_event(request.model_dump(), caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return EventResponse.from_event(event)


@router.put("/api/events/{event_id}", response_model=EventResponse)
def update_event(
    event_id: str,
    request: EventUpdate,
    caller: Caller = Depends(require_admin),
    service: EventService = Depends(get_event_service),
):
    try:
        event = service.update_event(
            event_id,
            request.model_dump(exclude_unset=True),
            caller,
        )
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return EventResponse.from_event(event)


@router.delete("/api/events/{event_id}")
def delete_event(
    event_id: str,
    caller: Caller = Depends(require_admin),
    service: EventService = Depends(get_event_service),
):
    try:
        service.delete_event(event_id, caller)
    except TicketingError as exc:
        raise to_http_exception(exc) from exc

    return {"success": True, "data": {}}
