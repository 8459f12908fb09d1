# ticketing/domain/policy.py
"""
Booking policy constants and the pure validation rules shared by the
models, the schemas and the lifecycle engine.

The constants are part of the observable contract and change only with
a redeploy.
"""

import re
import secrets
import string
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

MIN_TICKETS_PER_BOOKING = 1
MAX_TICKETS_PER_BOOKING = 10
CANCELLATION_CUTOFF_HOURS = 24

DEFAULT_REFUND_REASON = "Cancelled by user"
MAX_REFUND_REASON_LENGTH = 300

BOOKING_REFERENCE_PREFIX = "BK"
BOOKING_REFERENCE_SUFFIX_LENGTH = 6

EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

_BASE36_ALPHABET = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"

    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_booking_reference() -> str:
    # Microsecond timestamp keeps same-millisecond bursts apart;
    # the random suffix covers the rest.
    timestamp = to_base36(time.time_ns() // 1000)
    suffix = "".join(
        secrets.choice(_BASE36_ALPHABET)
        for _ in range(BOOKING_REFERENCE_SUFFIX_LENGTH)
    )
    return f"{BOOKING_REFERENCE_PREFIX}{timestamp}{suffix}".upper()


def is_valid_ticket_quantity(quantity: int) -> bool:
    return MIN_TICKETS_PER_BOOKING <= quantity <= MAX_TICKETS_PER_BOOKING


def is_valid_time(value: str) -> bool:
    return bool(value) and TIME_PATTERN.match(value) is not None


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_until(moment: datetime, now: datetime | None = None) -> float:
    now = now or utc_now()
    return (as_utc(moment) - as_utc(now)).total_seconds() / 3600


def can_cancel_before(event_date: datetime, now: datetime | None = None) -> bool:
    """Less than the cutoff blocks cancellation; exactly the cutoff is allowed."""
    return hours_until(event_date, now) >= CANCELLATION_CUTOFF_HOURS


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))
