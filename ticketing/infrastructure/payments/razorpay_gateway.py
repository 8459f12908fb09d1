# ticketing/infrastructure/payments/razorpay_gateway.py
"""
Razorpay implementation of the payment gateway.

Checkout sessions are Razorpay payment links: the link id (``plink_...``)
is the session id, its ``short_url`` is the redirect target and its
``notes`` carry the booking metadata.
"""

import json
import logging
import os
import re
import time
from decimal import Decimal
from typing import Optional

import razorpay
import requests

from ticketing.domain.exceptions import (
    InvalidArgumentError,
    InvalidSessionFormatError,
    SessionNotFoundError,
    SignatureInvalidError,
    UpstreamFailureError,
)
from ticketing.domain.policy import from_minor_units, to_minor_units
from ticketing.infrastructure.payments.gateway import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_UNPAID,
    AttendeeInfo,
    CheckoutSession,
    PaymentGateway,
    RefundResult,
    RetrievedSession,
    WebhookEvent,
    session_metadata,
)

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^plink_[A-Za-z0-9]+$")

_TRANSIENT_ERRORS = (
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class RazorpayGateway(PaymentGateway):

    def __init__(
        self,
        client: razorpay.Client,
        currency: str = "INR",
        callback_url: Optional[str] = None,
        retrieve_max_retries: int = 3,
        retrieve_retry_delay: float = 0.5,
    ):
        self.client = client
        self.currency = currency
        self.callback_url = callback_url
        self.retrieve_max_retries = max(1, retrieve_max_retries)
        self.retrieve_retry_delay = retrieve_retry_delay

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        key_id = os.getenv("RAZORPAY_KEY_ID")
        key_secret = os.getenv("RAZORPAY_KEY_SECRET")
        if not key_id or not key_secret:
            raise UpstreamFailureError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )

        client_url = os.getenv("CLIENT_URL", "http://localhost:5173")
        return cls(
            client=razorpay.Client(auth=(key_id, key_secret)),
            currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            callback_url=f"{client_url}/booking-success",
            retrieve_max_retries=int(os.getenv("PAYMENT_RETRIEVE_MAX_RETRIES", "3")),
            retrieve_retry_delay=float(os.getenv("PAYMENT_RETRIEVE_RETRY_DELAY", "0.5")),
        )

    def create_checkout_session(
        self,
        event,
        quantity: int,
        attendee: AttendeeInfo,
        caller_id: str,
    ) -> CheckoutSession:
        amount = to_minor_units(event.price) * quantity
        customer = {"name": attendee.name, "email": attendee.email}
        if attendee.phone:
            customer["contact"] = attendee.phone

        payload = {
            "amount": amount,
            "currency": self.currency,
            "accept_partial": False,
            "description": f"{quantity} x {event.title}"[:2048],
            "customer": customer,
            "notify": {"sms": False, "email": False},
            "reminder_enable": False,
            "notes": session_metadata(event, quantity, attendee, caller_id),
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
            payload["callback_method"] = "get"

        # Never retried: a second call would open a second chargeable link.
        try:
            link = self.client.payment_link.create(payload)
        except (razorpay.errors.BadRequestError, *_TRANSIENT_ERRORS) as exc:
            logger.error(
                "Payment session creation failed for event %s: %s",
                event.id,
                exc,
            )
            raise UpstreamFailureError("Payment session creation failed") from exc

        logger.info(
            "Created payment session %s for event %s (%s tickets, %s %s)",
            link["id"],
            event.id,
            quantity,
            amount,
            self.currency,
        )
        return CheckoutSession(session_id=link["id"], redirect_url=link["short_url"])

    def retrieve_session(self, session_id: str) -> RetrievedSession:
        if not session_id or not SESSION_ID_PATTERN.match(session_id):
            raise InvalidSessionFormatError()

        link = self._fetch_link_with_retry(session_id)

        payment_intent_id = None
        for payment in link.get("payments") or []:
            if payment.get("status") == "captured":
                payment_intent_id = payment.get("payment_id")
                break

        status = PAYMENT_STATUS_PAID if link.get("status") == "paid" else PAYMENT_STATUS_UNPAID
        return RetrievedSession(
            session_id=link["id"],
            payment_status=status,
            settled_amount=from_minor_units(link.get("amount_paid") or 0),
            currency=link.get("currency", self.currency),
            payment_intent_id=payment_intent_id,
            metadata={key: str(value) for key, value in (link.get("notes") or {}).items()},
        )

    def _fetch_link_with_retry(self, session_id: str) -> dict:
        # Read-only, so transient failures are safe to retry.
        for attempt in range(1, self.retrieve_max_retries + 1):
            try:
                return self.client.payment_link.fetch(session_id)
            except razorpay.errors.BadRequestError as exc:
                if "does not exist" in str(exc).lower():
                    raise SessionNotFoundError() from exc
                raise InvalidSessionFormatError() from exc
            except _TRANSIENT_ERRORS as exc:
                if attempt == self.retrieve_max_retries:
                    logger.exception(
                        "Payment session %s not retrievable after %s attempts.",
                        session_id,
                        self.retrieve_max_retries,
                    )
                    raise UpstreamFailureError(
                        "Payment provider unavailable while retrieving session"
                    ) from exc
                logger.warning(
                    "Payment provider error on session %s (attempt %s/%s). Retrying in %.1f seconds...",
                    session_id,
                    attempt,
                    self.retrieve_max_retries,
                    self.retrieve_retry_delay,
                )
                time.sleep(self.retrieve_retry_delay)

        raise UpstreamFailureError("Payment provider unavailable while retrieving session")

    def issue_refund(
        self,
        payment_intent_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundResult:
        data = {"notes": {"reason": reason[:256]}}
        if amount is not None:
            data["amount"] = to_minor_units(amount)

        # Never retried: refunds are not idempotent on the provider side.
        try:
            refund = self.client.payment.refund(payment_intent_id, data)
        except (razorpay.errors.BadRequestError, *_TRANSIENT_ERRORS) as exc:
            logger.error("Refund failed for payment %s: %s", payment_intent_id, exc)
            raise UpstreamFailureError("Refund request rejected by payment provider") from exc

        return RefundResult(
            refund_id=refund["id"],
            refunded_amount=from_minor_units(refund.get("amount") or 0),
        )

    def verify_webhook_signature(
        self,
        raw_payload: bytes,
        signature_header: str,
        secret: str,
    ) -> WebhookEvent:
        if not signature_header or not secret:
            raise SignatureInvalidError("Missing webhook signature or secret")

        # Razorpay signs the text body; undecodable bytes cannot carry a valid signature.
        try:
            body = raw_payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalidError("Webhook payload is not valid UTF-8") from exc

        try:
            self.client.utility.verify_webhook_signature(body, signature_header, secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise SignatureInvalidError() from exc

        try:
            document = json.loads(body)
        except ValueError as exc:
            raise InvalidArgumentError("Webhook payload is not valid JSON") from exc
        if not isinstance(document, dict):
            raise InvalidArgumentError("Webhook payload must be a JSON object")

        payload = document.get("payload")
        return WebhookEvent(
            event_type=document.get("event", "unknown"),
            data=payload if isinstance(payload, dict) else {},
            raw_payload=raw_payload,
        )
