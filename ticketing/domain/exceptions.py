class TicketingError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticketing engine.
    """

    kind = "TicketingError"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__.strip()
        super().__init__(self.message)


class NotFoundError(TicketingError):
    """Requested resource does not exist."""

    kind = "NotFound"


class InvalidArgumentError(TicketingError):
    """Request argument is out of range or malformed."""

    kind = "InvalidArgument"


class InvalidStateError(TicketingError):
    """Operation is not allowed in the current state."""

    kind = "InvalidState"


class InvalidStateTransitionError(InvalidStateError):
    """
    Raised when an illegal booking or payment state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class PaymentNotCompletedError(InvalidStateError):
    """Payment not completed"""

    kind = "PaymentNotCompleted"


class InsufficientInventoryError(TicketingError):
    """Not enough tickets available."""

    kind = "InsufficientInventory"


class UnauthorizedError(TicketingError):
    """Caller is not allowed to perform this operation."""

    kind = "Unauthorized"


class ConflictError(TicketingError):
    """Operation conflicts with the current booking state."""

    kind = "Conflict"


class UpstreamFailureError(TicketingError):
    """Payment provider is unreachable or rejected the request."""

    kind = "UpstreamFailure"


class SessionNotFoundError(NotFoundError):
    """Invalid session ID - session not found at the payment provider"""


class InvalidSessionFormatError(InvalidArgumentError):
    """Invalid payment session ID format"""


class SignatureInvalidError(TicketingError):
    """Webhook signature verification failed."""

    kind = "SignatureInvalid"


class InventoryInconsistencyError(TicketingError):
    """
    A booking was persisted but its inventory reservation could not be
    applied. Requires operator reconciliation; never retried blindly.
    """

    kind = "InventoryInconsistency"
