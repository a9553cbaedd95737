"""Event definitions for the escrow transaction lifecycle."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the escrow service."""

    # Transaction events
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_ESCROW_HELD = "transaction.escrow_held"
    TRANSACTION_CONFIRMED = "transaction.confirmed"
    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_REFUNDED = "transaction.refunded"
    TRANSACTION_DISPUTED = "transaction.disputed"

    # Refund events
    REFUND_REQUESTED = "refund.requested"
    REFUND_PROCESSED = "refund.processed"
    REFUND_REJECTED = "refund.rejected"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # transaction id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID  # same for every event of one transaction
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionStatusChangedEvent(BaseEvent):
    """Emitted whenever a transaction moves to a new status."""
    transaction_id: UUID
    from_status: Optional[str] = None
    to_status: str
    buyer_id: str
    provider_id: str
    amount: int
    currency: str
    actor_id: Optional[str] = None


class RefundEvent(BaseEvent):
    """Emitted when a refund is requested, processed or rejected."""
    transaction_id: UUID
    refund_id: UUID
    status: str
    reason: str


# Status each transition event reports, keyed by the status it moved to
STATUS_EVENT_TYPES: Dict[str, EventType] = {
    "pending": EventType.TRANSACTION_CREATED,
    "in_escrow": EventType.TRANSACTION_ESCROW_HELD,
    "confirmed": EventType.TRANSACTION_CONFIRMED,
    "completed": EventType.TRANSACTION_COMPLETED,
    "refunded": EventType.TRANSACTION_REFUNDED,
    "disputed": EventType.TRANSACTION_DISPUTED,
}

REFUND_EVENT_TYPES: Dict[str, EventType] = {
    "requested": EventType.REFUND_REQUESTED,
    "processed": EventType.REFUND_PROCESSED,
    "rejected": EventType.REFUND_REJECTED,
}


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    **{event_type: TransactionStatusChangedEvent for event_type in STATUS_EVENT_TYPES.values()},
    **{event_type: RefundEvent for event_type in REFUND_EVENT_TYPES.values()},
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
