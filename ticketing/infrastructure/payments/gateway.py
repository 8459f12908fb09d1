# ticketing/infrastructure/payments/gateway.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

# Provider-neutral status the engine checks before confirming a booking.
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_UNPAID = "unpaid"


@dataclass
class AttendeeInfo:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass
class CheckoutSession:
    """Result of creating a hosted checkout session."""
    session_id: str
    redirect_url: str


@dataclass
class RetrievedSession:
    """
    Provider view of a checkout session.
    settled_amount is in major currency units and is authoritative over
    anything the client sent.
    """
    session_id: str
    payment_status: str
    settled_amount: Decimal
    currency: str
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    refunded_amount: Decimal


@dataclass
class WebhookEvent:
    event_type: str
    data: Dict[str, Any]
    raw_payload: bytes


class PaymentGateway(ABC):
    """
    Capability set the lifecycle engine consumes from the payment provider.
    Every call may raise UpstreamFailureError on network/provider errors.
    """

    @abstractmethod
    def create_checkout_session(
        self,
        event,
        quantity: int,
        attendee: AttendeeInfo,
        caller_id: str,
    ) -> CheckoutSession:
        """
        Create a hosted payment flow for price x quantity. The session carries
        event_id, user_id, ticket_quantity and attendee fields as metadata so
        confirmation never depends on client-supplied parameters.
        """

    @abstractmethod
    def retrieve_session(self, session_id: str) -> RetrievedSession:
        """
        Raises SessionNotFoundError for ids the provider does not know and
        InvalidSessionFormatError for malformed ids.
        """

    @abstractmethod
    def issue_refund(
        self,
        payment_intent_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundResult:
        """Refund the payment; a missing amount means the full settled amount."""

    @abstractmethod
    def verify_webhook_signature(
        self,
        raw_payload: bytes,
        signature_header: str,
        secret: str,
    ) -> WebhookEvent:
        """Raises SignatureInvalidError when the signature does not match."""


def session_metadata(event, quantity: int, attendee: AttendeeInfo, caller_id: str) -> Dict[str, str]:
    return {
        "event_id": str(event.id),
        "user_id": str(caller_id),
        "ticket_quantity": str(quantity),
        "attendee_name": attendee.name,
        "attendee_email": attendee.email,
        "attendee_phone": attendee.phone or "",
    }
