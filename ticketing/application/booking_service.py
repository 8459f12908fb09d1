import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticketing.domain.exceptions import (
    ConflictError,
    InsufficientInventoryError,
    InvalidArgumentError,
    InvalidStateError,
    InventoryInconsistencyError,
    NotFoundError,
    PaymentNotCompletedError,
    UnauthorizedError,
)
from ticketing.domain.identity import Caller
from ticketing.domain.policy import (
    CANCELLATION_CUTOFF_HOURS,
    DEFAULT_REFUND_REASON,
    MAX_REFUND_REASON_LENGTH,
    MAX_TICKETS_PER_BOOKING,
    MIN_TICKETS_PER_BOOKING,
    as_utc,
    can_cancel_before,
    generate_booking_reference,
    is_valid_ticket_quantity,
    utc_now,
)
from ticketing.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    EventStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from ticketing.infrastructure.db.models import Booking, Event
from ticketing.infrastructure.payments.gateway import (
    PAYMENT_STATUS_PAID,
    AttendeeInfo,
    CheckoutSession,
    PaymentGateway,
    RetrievedSession,
)
from ticketing.infrastructure.repositories.booking_repository import BookingRepository
from ticketing.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)

MAX_REFERENCE_ATTEMPTS = 3

WEBHOOK_CHECKOUT_COMPLETED = "payment_link.paid"
WEBHOOK_PAYMENT_FAILED = "payment.failed"


class BookingLifecycleEngine:
    """
    Application service coordinating the booking lifecycle.

    Stateless over its two collaborators: the database session and the
    payment gateway. It is the only code that moves inventory counters or
    booking/payment status.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        webhook_secret: str | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def initiate_checkout(
        self,
        event_id: str,
        quantity: int,
        attendee: AttendeeInfo,
        caller: Caller,
    ) -> CheckoutSession:
        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError("Event not found")

        if event.status != EventStatus.PUBLISHED:
            raise InvalidStateError("Event is not available for booking")

        if as_utc(event.date) <= utc_now():
            raise InvalidStateError("Cannot book tickets for past events")

        if not is_valid_ticket_quantity(quantity):
            raise InvalidArgumentError(
                f"Ticket quantity must be between {MIN_TICKETS_PER_BOOKING} "
                f"and {MAX_TICKETS_PER_BOOKING}"
            )

        if event.available_tickets < quantity:
            raise InsufficientInventoryError(
                f"Only {event.available_tickets} tickets available"
            )

        # Stock is not held here; an abandoned checkout must not lock tickets.
        session = self.gateway.create_checkout_session(
            event=event,
            quantity=quantity,
            attendee=attendee,
            caller_id=caller.user_id,
        )
        logger.info(
            "Checkout initiated: session=%s event=%s user=%s quantity=%s",
            session.session_id,
            event.id,
            caller.user_id,
            quantity,
        )
        return session

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------
    def confirm_payment(self, session_id: str, caller: Caller) -> Booking:
        """
        Exactly-once conversion of a paid checkout session into a Booking.

        Calling it again with the same session id returns the same booking
        and never touches inventory a second time.
        """
        if not session_id:
            raise InvalidArgumentError("Session ID is required")

        existing = self.booking_repository.get_by_session_id(session_id)
        if existing:
            logger.info("Booking already exists for session %s", session_id)
            return existing

        session = self.gateway.retrieve_session(session_id)

        if session.payment_status != PAYMENT_STATUS_PAID:
            logger.warning(
                "Payment not completed for session %s (status=%s)",
                session_id,
                session.payment_status,
            )
            raise PaymentNotCompletedError()

        event_id, quantity, attendee, owner_id = self._booking_parameters(session)

        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError("Event not found")

        if event.available_tickets < quantity:
            self._report_paid_but_rejected(session, event, quantity)
            raise InsufficientInventoryError("Tickets no longer available")

        return self._persist_confirmed_booking(session, event, quantity, attendee, owner_id)

    def _booking_parameters(self, session: RetrievedSession):
        metadata = session.metadata
        try:
            event_id = metadata["event_id"]
            quantity = int(metadata["ticket_quantity"])
            owner_id = metadata["user_id"]
            attendee = AttendeeInfo(
                name=metadata["attendee_name"],
                email=metadata["attendee_email"],
                phone=metadata.get("attendee_phone") or None,
            )
        except (KeyError, ValueError) as exc:
            raise InvalidArgumentError(
                "Payment session is missing booking metadata"
            ) from exc

        if not is_valid_ticket_quantity(quantity):
            raise InvalidArgumentError("Payment session carries an invalid ticket quantity")

        return event_id, quantity, attendee, owner_id

    def _persist_confirmed_booking(
        self,
        session: RetrievedSession,
        event: Event,
        quantity: int,
        attendee: AttendeeInfo,
        owner_id: str,
    ) -> Booking:
        # Booking insert and inventory decrement commit or roll back together.
        for attempt in range(1, MAX_REFERENCE_ATTEMPTS + 1):
            booking = Booking(
                booking_reference=generate_booking_reference(),
                user_id=owner_id,
                event_id=event.id,
                ticket_quantity=quantity,
                total_amount=session.settled_amount,
                currency=session.currency,
                payment_status=PaymentStatus.PAID,
                booking_status=BookingStatus.CONFIRMED,
                payment_session_id=session.session_id,
                payment_intent_id=session.payment_intent_id,
                attendee_name=attendee.name,
                attendee_email=attendee.email,
                attendee_phone=attendee.phone,
            )

            try:
                self.booking_repository.insert(booking)
            except IntegrityError:
                self.db.rollback()
                winner = self.booking_repository.get_by_session_id(session.session_id)
                if winner:
                    logger.info(
                        "Concurrent confirmation for session %s resolved to booking %s",
                        session.session_id,
                        winner.id,
                    )
                    return winner
                logger.warning(
                    "Booking reference collision (attempt %s/%s), regenerating",
                    attempt,
                    MAX_REFERENCE_ATTEMPTS,
                )
                continue

            if not self.event_repository.reserve(event.id, quantity):
                self.db.rollback()
                self._report_paid_but_rejected(session, event, quantity)
                raise InsufficientInventoryError("Tickets no longer available")

            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                winner = self.booking_repository.get_by_session_id(session.session_id)
                if winner:
                    return winner
                raise ConflictError("Booking could not be stored; retry the confirmation") from exc

            self.db.refresh(booking)
            logger.info(
                "Booking %s (%s) confirmed: event=%s user=%s quantity=%s amount=%s %s",
                booking.id,
                booking.booking_reference,
                event.id,
                owner_id,
                quantity,
                booking.total_amount,
                booking.currency,
            )
            return booking

        raise ConflictError("Could not allocate a unique booking reference")

    def _report_paid_but_rejected(self, session: RetrievedSession, event: Event, quantity: int) -> None:
        logger.error(
            "Paid session %s rejected: event %s has %s tickets left, %s requested. "
            "Payment %s (%s %s) needs manual refund.",
            session.session_id,
            event.id,
            event.available_tickets,
            quantity,
            session.payment_intent_id,
            session.settled_amount,
            session.currency,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_booking(
        self,
        booking_id: str,
        caller: Caller,
        reason: str | None = None,
    ) -> Booking:
        booking = self._lock_booking(booking_id)
        try:
            released = self._cancel_locked(booking, caller, reason)
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)

        if not released:
            # The refund is real, so the cancellation stands without the release.
            logger.critical(
                "INVENTORY INCONSISTENCY: releasing %s tickets for booking %s would "
                "exceed total on event %s. Manual reconciliation required.",
                booking.ticket_quantity,
                booking.id,
                booking.event_id,
            )
            raise InventoryInconsistencyError()

        logger.info(
            "Booking %s cancelled by %s; %s tickets released to event %s",
            booking.id,
            caller.user_id,
            booking.ticket_quantity,
            booking.event_id,
        )
        return booking

    def _cancel_locked(self, booking: Booking, caller: Caller, reason: str | None) -> bool:
        if booking.user_id != caller.user_id and not caller.is_admin:
            raise UnauthorizedError("Not authorized to cancel this booking")

        if booking.booking_status == BookingStatus.CANCELLED:
            raise ConflictError("Booking is already cancelled")

        if booking.payment_status != PaymentStatus.PAID:
            raise InvalidStateError("Cannot cancel unpaid booking")

        if booking.booking_status != BookingStatus.CONFIRMED:
            raise InvalidStateError(
                f"Cannot cancel a booking that is {booking.booking_status.value}"
            )

        event = self.event_repository.get_by_id(booking.event_id)
        if not event:
            raise NotFoundError("Event not found")

        if not can_cancel_before(event.date):
            raise InvalidStateError(
                f"Cannot cancel booking less than {CANCELLATION_CUTOFF_HOURS} hours before event"
            )

        BookingStateMachine.validate_transition(booking.booking_status, BookingStatus.CANCELLED)
        reason = (reason or DEFAULT_REFUND_REASON)[:MAX_REFUND_REASON_LENGTH]

        # Claim before refunding so a concurrent cancel or check-in loses here.
        # A rejected refund rolls the claim back with the rest.
        claimed = self.booking_repository.transition_status(
            booking.id,
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            refund_reason=reason,
            cancelled_at=utc_now(),
        )
        if not claimed:
            raise ConflictError("Booking was changed by another request")

        if booking.payment_intent_id:
            PaymentStateMachine.validate_transition(booking.payment_status, PaymentStatus.REFUNDED)
            refund = self.gateway.issue_refund(
                payment_intent_id=booking.payment_intent_id,
                reason=reason,
                amount=Decimal(booking.total_amount),
            )
            booking.payment_status = PaymentStatus.REFUNDED
            booking.refund_amount = refund.refunded_amount
            logger.info(
                "Refund %s issued for booking %s: %s %s",
                refund.refund_id,
                booking.id,
                refund.refunded_amount,
                booking.currency,
            )

        released = self.event_repository.release(booking.event_id, booking.ticket_quantity)
        self.db.commit()
        return released

    # ------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------
    def check_in(self, booking_id: str, caller: Caller) -> Booking:
        if not caller.is_admin:
            raise UnauthorizedError("Admin role required for check-in")

        booking = self._lock_booking(booking_id)
        try:
            self._check_in_locked(booking)
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info("Booking %s checked in by %s", booking.id, caller.user_id)
        return booking

    def _check_in_locked(self, booking: Booking) -> None:
        if booking.payment_status != PaymentStatus.PAID:
            raise ConflictError("Cannot check-in unpaid booking")

        if booking.booking_status == BookingStatus.CANCELLED:
            raise ConflictError("Cannot check-in cancelled booking")

        if booking.checked_in:
            raise ConflictError("Attendee already checked in")

        if booking.booking_status != BookingStatus.CONFIRMED:
            raise ConflictError(
                f"Cannot check-in a booking that is {booking.booking_status.value}"
            )

        BookingStateMachine.validate_transition(booking.booking_status, BookingStatus.ATTENDED)
        claimed = self.booking_repository.transition_status(
            booking.id,
            BookingStatus.CONFIRMED,
            BookingStatus.ATTENDED,
            checked_in=True,
            checked_in_at=utc_now(),
        )
        if not claimed:
            raise ConflictError("Booking was changed by another request")

        self.db.commit()

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------
    def handle_webhook(self, raw_payload: bytes, signature_header: str) -> dict:
        """
        Verify and acknowledge a provider webhook. Confirmation already runs
        synchronously through confirm_payment, so no state changes here.
        """
        event = self.gateway.verify_webhook_signature(
            raw_payload,
            signature_header,
            self.webhook_secret or "",
        )

        if event.event_type == WEBHOOK_CHECKOUT_COMPLETED:
            link = event.data.get("payment_link", {}).get("entity", {})
            logger.info("Payment succeeded for session %s", link.get("id"))
        elif event.event_type == WEBHOOK_PAYMENT_FAILED:
            payment = event.data.get("payment", {}).get("entity", {})
            logger.info("Payment failed: %s", payment.get("id"))
        else:
            logger.info("Unhandled webhook event type %s", event.event_type)

        return {"received": True}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_booking(self, booking_id: str, caller: Caller) -> Booking:
        booking = self._get_booking(booking_id)
        if booking.user_id != caller.user_id and not caller.is_admin:
            raise UnauthorizedError("Not authorized to access this booking")
        return booking

    def list_my_bookings(self, caller: Caller) -> list[Booking]:
        return self.booking_repository.list_for_user(caller.user_id)

    def list_event_attendees(self, event_id: str, caller: Caller) -> list[Booking]:
        if not caller.is_admin:
            raise UnauthorizedError("Admin role required to list attendees")
        return self.booking_repository.list_attendees(event_id)

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def _lock_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.lock_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking
