"""Typed errors raised by the escrow engine."""
from typing import Optional


class EscrowError(Exception):
    """Base exception for all escrow errors."""

    kind = "escrow_error"
    status_code = 400

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class ValidationError(EscrowError):
    """Raised when a request is malformed (amount, self-booking, unknown provider)."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(EscrowError):
    """Raised for unknown ids and for non-parties, so existence never leaks."""

    kind = "not_found"
    status_code = 404

    def __init__(self, message: str = "Not found or not permitted"):
        super().__init__(message)


class UnauthorizedError(EscrowError):
    """Raised when a party lacks the capability for an operation."""

    kind = "unauthorized"
    status_code = 403


class InvalidTransitionError(EscrowError):
    """Raised when a transition is not allowed from the current state."""

    kind = "invalid_transition"
    status_code = 409


class StaleStateError(EscrowError):
    """Raised when another writer changed the transaction first."""

    kind = "stale_state"
    status_code = 409
