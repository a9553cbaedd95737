"""Capability checks for escrow operations."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import NotFoundError, UnauthorizedError
from .models import USER_ID_LENGTH, Transaction


class Role(str, Enum):
    """Platform roles."""
    ADMIN = "admin"
    MODERATOR = "moderator"
    PAYMENT_GATEWAY = "payment_gateway"
    USER = "user"


class Capability(str, Enum):
    """Operations an actor may be allowed to perform."""
    AUTHORIZE_PAYMENT = "authorize_payment"
    CONFIRM_MEETING = "confirm_meeting"
    REQUEST_REFUND = "request_refund"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    PROCESS_REFUND = "process_refund"
    VIEW = "view"
    MANAGE_PROVIDERS = "manage_providers"
    RUN_SWEEP = "run_sweep"


STAFF_ROLES = frozenset({Role.ADMIN, Role.MODERATOR})

BUYER_CAPABILITIES = frozenset({
    Capability.VIEW,
    Capability.REQUEST_REFUND,
    Capability.RAISE_DISPUTE,
})

PROVIDER_CAPABILITIES = frozenset({
    Capability.VIEW,
    Capability.CONFIRM_MEETING,
    Capability.RAISE_DISPUTE,
})

GATEWAY_CAPABILITIES = frozenset({
    Capability.VIEW,
    Capability.AUTHORIZE_PAYMENT,
})

STAFF_CAPABILITIES = frozenset(Capability)


@dataclass(frozen=True)
class Actor:
    """The caller of an operation, resolved once per request."""

    user_id: str
    roles: frozenset = frozenset({Role.USER})

    @property
    def is_staff(self) -> bool:
        return bool(self.roles & STAFF_ROLES)

    @classmethod
    def from_headers(cls, user_id: Optional[str], roles: Optional[str]) -> "Actor":
        """Build an actor from the X-User-Id / X-User-Roles request headers."""
        if not user_id or not user_id.strip():
            raise UnauthorizedError("Missing caller identity")
        if len(user_id.strip()) > USER_ID_LENGTH:
            raise UnauthorizedError(f"Caller identity longer than {USER_ID_LENGTH} characters")

        resolved = set()
        for raw in (roles or "").split(","):
            raw = raw.strip().lower()
            if not raw:
                continue
            try:
                resolved.add(Role(raw))
            except ValueError:
                raise UnauthorizedError(f"Unknown role: {raw}")

        return cls(user_id=user_id.strip(), roles=frozenset(resolved or {Role.USER}))


def capabilities_for(actor: Actor, transaction: Transaction) -> frozenset:
    """Resolve what the actor may do on one transaction."""
    if actor.is_staff:
        return STAFF_CAPABILITIES
    if Role.PAYMENT_GATEWAY in actor.roles:
        return GATEWAY_CAPABILITIES
    if actor.user_id == transaction.buyer_id:
        return BUYER_CAPABILITIES
    if actor.user_id == transaction.provider_id:
        return PROVIDER_CAPABILITIES
    return frozenset()


def authorize(actor: Actor, transaction: Transaction, capability: Capability) -> None:
    """
    Check a transaction-scoped capability.

    Raises:
        NotFoundError: actor is neither a party nor staff
        UnauthorizedError: actor is a party without this capability
    """
    capabilities = capabilities_for(actor, transaction)
    if not capabilities:
        raise NotFoundError()
    if capability not in capabilities:
        raise UnauthorizedError(
            f"Not permitted to {capability.value.replace('_', ' ')}",
            current_status=transaction.status,
        )


def require_staff(actor: Actor, capability: Capability) -> None:
    """Check a capability reserved for admins and moderators."""
    if not actor.is_staff:
        raise UnauthorizedError(f"Not permitted to {capability.value.replace('_', ' ')}")
