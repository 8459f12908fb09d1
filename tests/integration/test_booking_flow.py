import json
from datetime import timedelta
from decimal import Decimal

from ticketing.domain.policy import utc_now


def _event_payload(**overrides):
    payload = {
        "title": "Arijit Singh Live",
        "description": "Evening concert",
        "category": "Concert",
        "date": (utc_now() + timedelta(days=30)).isoformat(),
        "start_time": "19:00",
        "end_time": "22:00",
        "venue": {
            "name": "NSCI Dome",
            "address": "Worli",
            "city": "Mumbai",
            "state": "Maharashtra",
            "zip_code": "400018",
            "capacity": 100,
        },
        "price": "250.00",
        "total_tickets": 3,
    }
    payload.update(overrides)
    return payload


def _checkout(client, headers, event_id, quantity=2):
    return client.post(
        "/api/bookings/create-checkout-session",
        json={
            "event_id": event_id,
            "ticket_quantity": quantity,
            "attendee_info": {
                "name": "Jane Doe",
                "email": "jane@example.com",
                "phone": "",
            },
        },
        headers=headers,
    )


def test_booking_flow(client, gateway, auth_headers):
    admin = auth_headers("admin-1", "admin")
    user = auth_headers("user-1")

    event_response = client.post("/api/events", json=_event_payload(), headers=admin)
    assert event_response.status_code == 201
    event_id = event_response.json()["id"]
    assert event_response.json()["available_tickets"] == 3

    checkout_response = _checkout(client, user, event_id)
    assert checkout_response.status_code == 200
    session_id = checkout_response.json()["session_id"]
    assert checkout_response.json()["session_url"].endswith(session_id)

    pending = client.post(
        "/api/bookings/confirm-payment",
        json={"session_id": session_id},
        headers=user,
    )
    assert pending.status_code == 400
    assert pending.json()["detail"]["error"] == "PaymentNotCompleted"

    gateway.mark_paid(session_id)

    confirm_response = client.post(
        "/api/bookings/confirm-payment",
        json={"session_id": session_id},
        headers=user,
    )
    assert confirm_response.status_code == 201
    booking = confirm_response.json()
    assert booking["booking_status"] == "confirmed"
    assert booking["payment_status"] == "paid"
    assert Decimal(booking["total_amount"]) == Decimal("500")
    assert booking["attendee_phone"] is None

    replay = client.post(
        "/api/bookings/confirm-payment",
        json={"session_id": session_id},
        headers=user,
    )
    assert replay.json()["id"] == booking["id"]

    event_after = client.get(f"/api/events/{event_id}").json()
    assert event_after["available_tickets"] == 1
    assert event_after["sold_tickets"] == 2

    mine = client.get("/api/bookings/my-bookings", headers=user)
    assert [b["id"] for b in mine.json()] == [booking["id"]]

    cancel_response = client.put(
        f"/api/bookings/{booking['id']}/cancel",
        json={"reason": "Cannot attend"},
        headers=user,
    )
    assert cancel_response.status_code == 200
    assert cancel_response.json()["booking_status"] == "cancelled"
    assert cancel_response.json()["payment_status"] == "refunded"
    assert client.get(f"/api/events/{event_id}").json()["available_tickets"] == 3


def test_checkout_errors_map_to_status_codes(client, auth_headers):
    admin = auth_headers("admin-1", "admin")
    user = auth_headers("user-1")
    event_id = client.post("/api/events", json=_event_payload(), headers=admin).json()["id"]

    too_many = _checkout(client, user, event_id, quantity=11)
    assert too_many.status_code == 400
    assert too_many.json()["detail"]["error"] == "InvalidArgument"

    sold_out = _checkout(client, user, event_id, quantity=4)
    assert sold_out.status_code == 409
    assert sold_out.json()["detail"] == {
        "error": "InsufficientInventory",
        "message": "Only 3 tickets available",
    }

    missing = _checkout(client, user, "no-such-event")
    assert missing.status_code == 404


def test_requests_without_token_are_rejected(client):
    response = client.get("/api/bookings/my-bookings")
    assert response.status_code == 401


def test_check_in_is_admin_only(client, gateway, auth_headers):
    admin = auth_headers("admin-1", "admin")
    user = auth_headers("user-1")
    event_id = client.post("/api/events", json=_event_payload(), headers=admin).json()["id"]
    session_id = _checkout(client, user, event_id, quantity=1).json()["session_id"]
    gateway.mark_paid(session_id)
    booking_id = client.post(
        "/api/bookings/confirm-payment",
        json={"session_id": session_id},
        headers=user,
    ).json()["id"]

    assert client.put(f"/api/bookings/{booking_id}/checkin", headers=user).status_code == 403

    checked = client.put(f"/api/bookings/{booking_id}/checkin", headers=admin)
    assert checked.status_code == 200
    assert checked.json()["booking_status"] == "attended"

    again = client.put(f"/api/bookings/{booking_id}/checkin", headers=admin)
    assert again.status_code == 409

    attendees = client.get(f"/api/bookings/event/{event_id}/attendees", headers=admin)
    assert [b["id"] for b in attendees.json()] == [booking_id]


def test_other_users_cannot_see_or_cancel_booking(client, gateway, auth_headers):
    admin = auth_headers("admin-1", "admin")
    owner = auth_headers("user-1")
    stranger = auth_headers("user-2")
    event_id = client.post("/api/events", json=_event_payload(), headers=admin).json()["id"]
    session_id = _checkout(client, owner, event_id, quantity=1).json()["session_id"]
    gateway.mark_paid(session_id)
    booking_id = client.post(
        "/api/bookings/confirm-payment",
        json={"session_id": session_id},
        headers=owner,
    ).json()["id"]

    assert client.get(f"/api/bookings/{booking_id}", headers=stranger).status_code == 403
    assert client.put(f"/api/bookings/{booking_id}/cancel", headers=stranger).status_code == 403
    assert client.get(f"/api/bookings/{booking_id}", headers=owner).status_code == 200


def test_webhook_signature(client, sign_payload):
    body = json.dumps({"event": "payment.failed", "payload": {"payment": {"entity": {"id": "pay_1"}}}}).encode()

    accepted = client.post(
        "/api/bookings/webhook",
        content=body,
        headers={"X-Razorpay-Signature": sign_payload(body), "Content-Type": "application/json"},
    )
    assert accepted.status_code == 200
    assert accepted.json() == {"received": True}

    rejected = client.post(
        "/api/bookings/webhook",
        content=body,
        headers={"X-Razorpay-Signature": "forged", "Content-Type": "application/json"},
    )
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["error"] == "SignatureInvalid"
