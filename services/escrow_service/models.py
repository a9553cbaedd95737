"""Database models for Escrow Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)

from shared.database import Base


class TransactionStatus(str, Enum):
    """Escrow transaction status."""
    PENDING = "pending"
    IN_ESCROW = "in_escrow"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"
    COMPLETED = "completed"
    DISPUTED = "disputed"


TERMINAL_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.REFUNDED})

USER_ID_LENGTH = 64
MAX_AMOUNT = 2**63 - 1  # BIGINT upper bound


class RefundStatus(str, Enum):
    """Refund status."""
    REQUESTED = "requested"
    PROCESSED = "processed"
    REJECTED = "rejected"


class Transaction(Base):
    """Booking held in escrow between a buyer and a provider."""

    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    buyer_id = Column(String(USER_ID_LENGTH), nullable=False, index=True)
    provider_id = Column(String(USER_ID_LENGTH), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    payment_method = Column(String(20), nullable=False)
    status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)

    scheduled_at = Column(DateTime, nullable=True)
    escrow_expires_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "NOT (confirmed_at IS NOT NULL AND refunded_at IS NOT NULL)",
            name="ck_transactions_single_outcome",
        ),
        Index("ix_transactions_status_expires", "status", "escrow_expires_at"),
    )


class Refund(Base):
    """Refund request, append-only under its transaction."""

    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(Uuid, ForeignKey("transactions.id"), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    status = Column(String(20), default=RefundStatus.REQUESTED.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)


class TransitionRecord(Base):
    """Audit log of applied status transitions."""

    __tablename__ = "transaction_transitions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(Uuid, ForeignKey("transactions.id"), nullable=False)
    version = Column(Integer, nullable=False)  # transaction version this transition produced
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor_id = Column(String(USER_ID_LENGTH), nullable=True)  # None for system transitions
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transaction_transitions_txn_version", "transaction_id", "version", unique=True),
    )


class ProviderProfile(Base):
    """Provider listing consulted when a booking is created."""

    __tablename__ = "provider_profiles"

    user_id = Column(String(USER_ID_LENGTH), primary_key=True)
    display_name = Column(String(120), nullable=True)
    price_per_hour = Column(BigInteger, nullable=True)  # minor units
    is_approved = Column(Boolean, default=False, nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)
    approved_by = Column(String(USER_ID_LENGTH), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_approved and self.is_visible)
