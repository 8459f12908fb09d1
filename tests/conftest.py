import hashlib
import hmac
import json
import os
import threading
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from ticketing.api import deps
from ticketing.application.booking_service import BookingLifecycleEngine
from ticketing.domain.exceptions import (
    InvalidSessionFormatError,
    SessionNotFoundError,
    SignatureInvalidError,
    UpstreamFailureError,
)
from ticketing.domain.identity import Caller, Role
from ticketing.domain.policy import from_minor_units, to_minor_units, utc_now
from ticketing.domain.state_machine import EventCategory, EventStatus
from ticketing.infrastructure.db.models import Base, Event
from ticketing.infrastructure.db.session import build_engine
from ticketing.infrastructure.payments.gateway import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_UNPAID,
    CheckoutSession,
    PaymentGateway,
    RefundResult,
    RetrievedSession,
    WebhookEvent,
    session_metadata,
)
from ticketing.main import app

WEBHOOK_SECRET = "whsec_test"


class FakePaymentGateway(PaymentGateway):
    """In-memory stand-in for the payment provider."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sessions: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.retrieve_calls = 0
        self.fail_refunds = False

    def create_checkout_session(self, event, quantity, attendee, caller_id):
        session_id = f"plink_{uuid4().hex[:14]}"
        with self._lock:
            self.sessions[session_id] = {
                "status": PAYMENT_STATUS_UNPAID,
                "amount": to_minor_units(event.price) * quantity,
                "payment_id": None,
                "metadata": session_metadata(event, quantity, attendee, caller_id),
            }
        return CheckoutSession(
            session_id=session_id,
            redirect_url=f"https://rzp.io/i/{session_id}",
        )

    def mark_paid(self, session_id: str, payment_id: str | None = "auto") -> None:
        with self._lock:
            session = self.sessions[session_id]
            session["status"] = PAYMENT_STATUS_PAID
            session["payment_id"] = (
                f"pay_{uuid4().hex[:14]}" if payment_id == "auto" else payment_id
            )

    def retrieve_session(self, session_id):
        with self._lock:
            self.retrieve_calls += 1
            if not session_id.startswith("plink_"):
                raise InvalidSessionFormatError()
            if session_id not in self.sessions:
                raise SessionNotFoundError()
            session = dict(self.sessions[session_id])

        paid = session["status"] == PAYMENT_STATUS_PAID
        return RetrievedSession(
            session_id=session_id,
            payment_status=session["status"],
            settled_amount=from_minor_units(session["amount"] if paid else 0),
            currency="INR",
            payment_intent_id=session["payment_id"],
            metadata=dict(session["metadata"]),
        )

    def issue_refund(self, payment_intent_id, reason, amount=None):
        if self.fail_refunds:
            raise UpstreamFailureError("Refund request rejected by payment provider")
        with self._lock:
            self.refunds.append(
                {"payment_id": payment_intent_id, "reason": reason, "amount": amount}
            )
        return RefundResult(
            refund_id=f"rfnd_{uuid4().hex[:14]}",
            refunded_amount=Decimal(amount),
        )

    def verify_webhook_signature(self, raw_payload, signature_header, secret):
        expected = sign_webhook(raw_payload, secret)
        if not secret or not hmac.compare_digest(expected, signature_header or ""):
            raise SignatureInvalidError()
        document = json.loads(raw_payload)
        return WebhookEvent(
            event_type=document.get("event", "unknown"),
            data=document.get("payload") or {},
            raw_payload=raw_payload,
        )


def sign_webhook(raw_payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


def token_for(user_id: str, role: str = "user") -> dict:
    token = jwt.encode({"sub": user_id, "role": role}, deps.JWT_SECRET, algorithm=deps.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ticketing.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def user():
    return Caller(user_id="user-1", role=Role.USER)


@pytest.fixture
def other_user():
    return Caller(user_id="user-2", role=Role.USER)


@pytest.fixture
def admin():
    return Caller(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def lifecycle(db, gateway):
    return BookingLifecycleEngine(db, gateway, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def make_lifecycle(session_factory, gateway):
    """Fresh engine on its own session, one per simulated request worker."""

    def _make():
        return BookingLifecycleEngine(session_factory(), gateway, webhook_secret=WEBHOOK_SECRET)

    return _make


@pytest.fixture
def make_event(db):
    def _make(**overrides) -> Event:
        total = overrides.pop("total_tickets", 100)
        fields = {
            "title": "Test Concert",
            "description": "A test event",
            "category": EventCategory.CONCERT,
            "date": utc_now() + timedelta(days=30),
            "start_time": "19:00",
            "end_time": "22:00",
            "venue_name": "Test Venue",
            "venue_address": "1 Main Street",
            "venue_city": "Mumbai",
            "venue_state": "Maharashtra",
            "venue_zip_code": "400001",
            "venue_capacity": 500,
            "price": Decimal("250.00"),
            "total_tickets": total,
            "available_tickets": total,
            "status": EventStatus.PUBLISHED,
            "organizer_id": "admin-1",
            "tags": [],
        }
        fields.update(overrides)
        event = Event(**fields)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_webhook_secret] = lambda: WEBHOOK_SECRET

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return token_for


@pytest.fixture
def sign_payload():
    return lambda raw_payload: sign_webhook(raw_payload, WEBHOOK_SECRET)
