# tests/unit/test_razorpay_gateway.py

import hashlib
import hmac
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import razorpay

from ticketing.domain.exceptions import (
    InvalidArgumentError,
    InvalidSessionFormatError,
    SessionNotFoundError,
    SignatureInvalidError,
    UpstreamFailureError,
)
from ticketing.infrastructure.payments.gateway import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_UNPAID,
    AttendeeInfo,
)
from ticketing.infrastructure.payments.razorpay_gateway import RazorpayGateway

EVENT = SimpleNamespace(id="evt-1", title="Test Concert", price=Decimal("250.00"))
ATTENDEE = AttendeeInfo(name="Jane Doe", email="jane@example.com", phone="+919876543210")


def _gateway(client=None):
    return RazorpayGateway(
        client=client or MagicMock(),
        callback_url="http://localhost:5173/booking-success",
        retrieve_max_retries=3,
        retrieve_retry_delay=0,
    )


def _link(status="paid", **overrides):
    link = {
        "id": "plink_Abc123",
        "status": status,
        "amount": 50000,
        "amount_paid": 50000 if status == "paid" else 0,
        "currency": "INR",
        "payments": [{"payment_id": "pay_Xyz789", "status": "captured"}] if status == "paid" else None,
        "notes": {"event_id": "evt-1", "user_id": "user-1", "ticket_quantity": "2"},
    }
    link.update(overrides)
    return link


# ---------------------
# CHECKOUT SESSIONS
# ---------------------

def test_create_session_charges_minor_units_and_carries_metadata():
    client = MagicMock()
    client.payment_link.create.return_value = {
        "id": "plink_Abc123",
        "short_url": "https://rzp.io/i/abc",
    }
    gateway = _gateway(client)

    session = gateway.create_checkout_session(EVENT, 2, ATTENDEE, "user-1")

    assert session.session_id == "plink_Abc123"
    assert session.redirect_url == "https://rzp.io/i/abc"

    payload = client.payment_link.create.call_args.args[0]
    assert payload["amount"] == 50000
    assert payload["currency"] == "INR"
    assert payload["customer"]["contact"] == "+919876543210"
    assert payload["notes"] == {
        "event_id": "evt-1",
        "user_id": "user-1",
        "ticket_quantity": "2",
        "attendee_name": "Jane Doe",
        "attendee_email": "jane@example.com",
        "attendee_phone": "+919876543210",
    }


def test_create_session_failure_is_not_retried():
    client = MagicMock()
    client.payment_link.create.side_effect = razorpay.errors.ServerError("boom")

    with pytest.raises(UpstreamFailureError):
        _gateway(client).create_checkout_session(EVENT, 1, ATTENDEE, "user-1")

    assert client.payment_link.create.call_count == 1


# ---------------------
# RETRIEVAL
# ---------------------

def test_retrieve_paid_session():
    client = MagicMock()
    client.payment_link.fetch.return_value = _link()

    session = _gateway(client).retrieve_session("plink_Abc123")

    assert session.payment_status == PAYMENT_STATUS_PAID
    assert session.settled_amount == Decimal("500.00")
    assert session.payment_intent_id == "pay_Xyz789"
    assert session.metadata["ticket_quantity"] == "2"


def test_retrieve_unpaid_session():
    client = MagicMock()
    client.payment_link.fetch.return_value = _link(status="created")

    session = _gateway(client).retrieve_session("plink_Abc123")

    assert session.payment_status == PAYMENT_STATUS_UNPAID
    assert session.payment_intent_id is None


def test_malformed_session_id_never_reaches_provider():
    client = MagicMock()

    with pytest.raises(InvalidSessionFormatError):
        _gateway(client).retrieve_session("cs_test_123")

    client.payment_link.fetch.assert_not_called()


def test_unknown_session_id():
    client = MagicMock()
    client.payment_link.fetch.side_effect = razorpay.errors.BadRequestError(
        "The id provided does not exist"
    )

    with pytest.raises(SessionNotFoundError):
        _gateway(client).retrieve_session("plink_Missing1")


def test_transient_errors_are_retried():
    client = MagicMock()
    client.payment_link.fetch.side_effect = [
        razorpay.errors.GatewayError("timeout"),
        _link(),
    ]

    session = _gateway(client).retrieve_session("plink_Abc123")

    assert session.payment_status == PAYMENT_STATUS_PAID
    assert client.payment_link.fetch.call_count == 2


def test_retrieval_gives_up_after_max_retries():
    client = MagicMock()
    client.payment_link.fetch.side_effect = razorpay.errors.ServerError("down")

    with pytest.raises(UpstreamFailureError):
        _gateway(client).retrieve_session("plink_Abc123")

    assert client.payment_link.fetch.call_count == 3


# ---------------------
# REFUNDS
# ---------------------

def test_refund_sends_amount_in_minor_units():
    client = MagicMock()
    client.payment.refund.return_value = {"id": "rfnd_1", "amount": 50000}

    refund = _gateway(client).issue_refund("pay_Xyz789", "Cancelled by user", Decimal("500.00"))

    assert refund.refund_id == "rfnd_1"
    assert refund.refunded_amount == Decimal("500.00")
    client.payment.refund.assert_called_once_with(
        "pay_Xyz789",
        {"notes": {"reason": "Cancelled by user"}, "amount": 50000},
    )


def test_refund_failure_is_not_retried():
    client = MagicMock()
    client.payment.refund.side_effect = razorpay.errors.BadRequestError("already refunded")

    with pytest.raises(UpstreamFailureError):
        _gateway(client).issue_refund("pay_Xyz789", "Cancelled by user")

    assert client.payment.refund.call_count == 1


# ---------------------
# WEBHOOKS
# ---------------------

def _signed(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def test_webhook_with_valid_signature():
    gateway = _gateway(razorpay.Client(auth=("rzp_test_key", "rzp_test_secret")))
    body = json.dumps({"event": "payment_link.paid", "payload": {"payment_link": {}}}).encode()

    event = gateway.verify_webhook_signature(body, _signed(body, "whsec"), "whsec")

    assert event.event_type == "payment_link.paid"
    assert event.raw_payload == body


def test_webhook_with_tampered_body():
    gateway = _gateway(razorpay.Client(auth=("rzp_test_key", "rzp_test_secret")))
    body = b'{"event": "payment_link.paid", "payload": {}}'
    signature = _signed(body, "whsec")

    with pytest.raises(SignatureInvalidError):
        gateway.verify_webhook_signature(body + b" ", signature, "whsec")


def test_webhook_without_signature_header():
    with pytest.raises(SignatureInvalidError):
        _gateway().verify_webhook_signature(b"{}", "", "whsec")


def test_webhook_with_undecodable_body():
    client = MagicMock()

    with pytest.raises(SignatureInvalidError):
        _gateway(client).verify_webhook_signature(b"\xff\xfe", "sig", "whsec")

    client.utility.verify_webhook_signature.assert_not_called()


def test_webhook_body_must_be_an_object():
    gateway = _gateway(razorpay.Client(auth=("rzp_test_key", "rzp_test_secret")))
    body = b'["payment_link.paid"]'

    with pytest.raises(InvalidArgumentError):
        gateway.verify_webhook_signature(body, _signed(body, "whsec"), "whsec")
