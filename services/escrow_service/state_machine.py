"""Escrow state machine: the only writer of transaction status and outcome timestamps."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.events import (
    REFUND_EVENT_TYPES,
    STATUS_EVENT_TYPES,
    RefundEvent,
    TransactionStatusChangedEvent,
)
from shared.outbox import save_event_to_outbox

from .authorization import Actor, Capability, authorize, require_staff
from .errors import InvalidTransitionError, NotFoundError, StaleStateError, ValidationError
from .ledger import RefundLedger
from .models import (
    MAX_AMOUNT,
    USER_ID_LENGTH,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
    TransitionRecord,
)
from .store import ProviderDirectory, TransactionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.IN_ESCROW}),
    TransactionStatus.IN_ESCROW: frozenset({
        TransactionStatus.CONFIRMED,
        TransactionStatus.REFUNDED,
        TransactionStatus.DISPUTED,
    }),
    TransactionStatus.CONFIRMED: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.DISPUTED,
    }),
    TransactionStatus.DISPUTED: frozenset({
        TransactionStatus.CONFIRMED,
        TransactionStatus.REFUNDED,
    }),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

EXPIRY_REASON = "escrow expired"


@dataclass
class ProviderSummary:
    """Money a provider has waiting in escrow and already released."""
    provider_id: str
    in_escrow_count: int = 0
    in_escrow_amount: int = 0
    completed_count: int = 0
    completed_amount: int = 0


def is_allowed(from_status: str, to_status: str) -> bool:
    """Whether the transition table permits from_status -> to_status."""
    return TransactionStatus(to_status) in ALLOWED_TRANSITIONS[TransactionStatus(from_status)]


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class EscrowEngine:
    """
    Applies escrow transitions inside one database transaction each.

    Every transition re-reads the row, checks the caller's capability and the
    transition guard, then writes with a version compare-and-swap. Losing a
    race raises StaleStateError carrying the status that won. A history row
    and an outbox event are written alongside each transition and committed
    together with it.
    """

    def __init__(self, session: AsyncSession, settings: Settings, clock: Clock = datetime.utcnow):
        self.session = session
        self.settings = settings
        self.clock = clock
        self.transactions = TransactionStore(session)
        self.refunds = RefundLedger(session)
        self.providers = ProviderDirectory(session)

    @property
    def hold_window(self) -> timedelta:
        return timedelta(minutes=self.settings.escrow_hold_minutes)

    @property
    def settlement_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.settlement_delay_seconds)

    # Booking

    async def create_booking(
        self,
        actor: Actor,
        provider_id: str,
        amount: int,
        payment_method: str,
        scheduled_at: Optional[datetime] = None,
        currency: Optional[str] = None,
    ) -> Transaction:
        """Create a pending transaction with the actor as buyer."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive integer in minor units")
        if amount > MAX_AMOUNT:
            raise ValidationError(f"Amount must not exceed {MAX_AMOUNT}")

        provider_id = (provider_id or "").strip()
        if not provider_id:
            raise ValidationError("provider_id is required")
        if len(provider_id) > USER_ID_LENGTH:
            raise ValidationError(f"provider_id must be at most {USER_ID_LENGTH} characters")
        if provider_id == actor.user_id:
            raise ValidationError("Buyer and provider must be different users")

        method = (payment_method or "").strip().lower()
        if method not in self.settings.allowed_payment_methods:
            allowed = ", ".join(sorted(self.settings.allowed_payment_methods))
            raise ValidationError(f"payment_method must be one of: {allowed}")

        profile = await self.providers.get(provider_id)
        if profile is None or not profile.is_bookable:
            raise ValidationError("Provider is not available for booking")

        now = self.clock()
        transaction = Transaction(
            id=uuid4(),
            buyer_id=actor.user_id,
            provider_id=provider_id,
            amount=amount,
            currency=(currency or self.settings.default_currency).upper(),
            payment_method=method,
            status=TransactionStatus.PENDING.value,
            scheduled_at=to_naive_utc(scheduled_at),
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self.transactions.add(transaction)

        await self.transactions.record_transition(
            transaction.id, 1, None, TransactionStatus.PENDING.value,
            actor_id=actor.user_id, reason="booking created", at=now,
        )
        await self._emit_status(transaction, None, actor.user_id)
        await self.session.commit()

        logger.info(
            f"Booking {transaction.id} created: buyer={actor.user_id}, "
            f"provider={provider_id}, amount={amount} {transaction.currency}"
        )
        return transaction

    async def authorize_payment(
        self, actor: Actor, transaction_id: UUID, expected_version: Optional[int] = None
    ) -> Transaction:
        """Payment confirmed by the gateway: start the escrow hold."""
        transaction = await self._load(actor, transaction_id, Capability.AUTHORIZE_PAYMENT, expected_version)

        now = self.clock()
        await self._transition(
            transaction, TransactionStatus.IN_ESCROW, actor.user_id, "payment authorized", now,
            escrow_expires_at=now + self.hold_window,
        )
        await self.session.commit()

        logger.info(f"Transaction {transaction.id} in escrow until {transaction.escrow_expires_at}")
        return transaction

    async def confirm_meeting(
        self, actor: Actor, transaction_id: UUID, expected_version: Optional[int] = None
    ) -> Transaction:
        """Provider confirms the meeting took place before the hold expired."""
        transaction = await self._load(actor, transaction_id, Capability.CONFIRM_MEETING, expected_version)

        if transaction.status != TransactionStatus.IN_ESCROW.value:
            raise InvalidTransitionError(
                f"Cannot confirm a transaction that is {transaction.status}",
                current_status=transaction.status,
            )

        now = self.clock()
        if transaction.escrow_expires_at is not None and now >= transaction.escrow_expires_at:
            raise InvalidTransitionError(
                "Escrow hold has expired", current_status=transaction.status
            )

        await self._transition(
            transaction, TransactionStatus.CONFIRMED, actor.user_id, "meeting confirmed", now,
            confirmed_at=now,
        )
        await self._release_if_due(transaction, now)
        await self.session.commit()

        logger.info(f"Transaction {transaction.id} confirmed by {actor.user_id}")
        return transaction

    async def complete(
        self,
        transaction_id: UUID,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Transaction]:
        """Release funds of a confirmed transaction. Returns None if already completed."""
        now = now or self.clock()
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError()
        if transaction.status == TransactionStatus.COMPLETED.value:
            return None
        self._check_version(transaction, expected_version)

        await self._transition(
            transaction, TransactionStatus.COMPLETED, None, "funds released", now,
            completed_at=now,
        )
        await self.session.commit()

        logger.info(f"Transaction {transaction.id} completed, funds released to {transaction.provider_id}")
        return transaction

    # Refunds and disputes

    async def request_refund(
        self,
        actor: Actor,
        transaction_id: UUID,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> tuple[Transaction, Refund]:
        """
        File a refund against a transaction.

        While the money is still held the refund is granted immediately.
        After confirmation it becomes a dispute for an admin to settle; on an
        open dispute it is added to the ledger for review.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A refund reason is required")

        transaction = await self._load(actor, transaction_id, Capability.REQUEST_REFUND, expected_version)
        now = self.clock()

        if transaction.status == TransactionStatus.IN_ESCROW.value:
            await self._transition(
                transaction, TransactionStatus.REFUNDED, actor.user_id, reason, now,
                refunded_at=now,
            )
            refund = await self.refunds.add(transaction.id, reason, RefundStatus.PROCESSED, at=now)
        elif transaction.status == TransactionStatus.CONFIRMED.value:
            await self._transition(transaction, TransactionStatus.DISPUTED, actor.user_id, reason, now)
            refund = await self.refunds.add(transaction.id, reason, RefundStatus.REQUESTED, at=now)
        elif transaction.status == TransactionStatus.DISPUTED.value:
            await self.transactions.compare_and_set(transaction, transaction.version, updated_at=now)
            refund = await self.refunds.add(transaction.id, reason, RefundStatus.REQUESTED, at=now)
        else:
            raise InvalidTransitionError(
                f"Cannot request a refund while {transaction.status}",
                current_status=transaction.status,
            )

        await self._emit_refund(transaction, refund)
        await self.session.commit()

        logger.info(
            f"Refund {refund.id} {refund.status} for transaction {transaction.id} "
            f"by {actor.user_id}: {reason}"
        )
        return transaction, refund

    async def raise_dispute(
        self,
        actor: Actor,
        transaction_id: UUID,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        """Take a transaction out of the automatic path until an admin resolves it."""
        transaction = await self._load(actor, transaction_id, Capability.RAISE_DISPUTE, expected_version)

        await self._transition(
            transaction, TransactionStatus.DISPUTED, actor.user_id, reason or "dispute raised", self.clock()
        )
        await self.session.commit()

        logger.warning(f"Transaction {transaction.id} disputed by {actor.user_id}: {reason}")
        return transaction

    async def resolve_dispute(
        self,
        actor: Actor,
        transaction_id: UUID,
        outcome: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        """Admin decision on a disputed transaction: confirmed or refunded."""
        transaction = await self._load(actor, transaction_id, Capability.RESOLVE_DISPUTE, expected_version)

        if outcome not in (TransactionStatus.CONFIRMED.value, TransactionStatus.REFUNDED.value):
            raise ValidationError("outcome must be 'confirmed' or 'refunded'")
        if transaction.status != TransactionStatus.DISPUTED.value:
            raise InvalidTransitionError(
                f"Only disputed transactions can be resolved (is {transaction.status})",
                current_status=transaction.status,
            )

        now = self.clock()
        open_requests = await self.refunds.open_requests(transaction.id)

        if outcome == TransactionStatus.CONFIRMED.value:
            await self._transition(
                transaction, TransactionStatus.CONFIRMED, actor.user_id,
                reason or "dispute resolved for provider", now,
                confirmed_at=transaction.confirmed_at or now,
            )
            for refund in open_requests:
                self.refunds.close(refund, RefundStatus.REJECTED, at=now)
                await self._emit_refund(transaction, refund)
            await self._release_if_due(transaction, now)
        else:
            reason = reason or "dispute resolved for buyer"
            await self._transition(
                transaction, TransactionStatus.REFUNDED, actor.user_id, reason, now,
                confirmed_at=None, refunded_at=now,
            )
            # exactly one refund ends up processed; later requests are rejected
            if open_requests:
                granted = self.refunds.close(open_requests[0], RefundStatus.PROCESSED, at=now)
            else:
                granted = await self.refunds.add(transaction.id, reason, RefundStatus.PROCESSED, at=now)
            await self._emit_refund(transaction, granted)
            for refund in open_requests[1:]:
                self.refunds.close(refund, RefundStatus.REJECTED, at=now)
                await self._emit_refund(transaction, refund)

        await self.session.commit()

        logger.info(f"Dispute on {transaction.id} resolved as {outcome} by {actor.user_id}")
        return transaction

    async def process_refund(
        self, actor: Actor, refund_id: UUID, outcome: str
    ) -> tuple[Transaction, Refund]:
        """Admin decision on a requested refund."""
        require_staff(actor, Capability.PROCESS_REFUND)

        if outcome not in (RefundStatus.PROCESSED.value, RefundStatus.REJECTED.value):
            raise ValidationError("outcome must be 'processed' or 'rejected'")

        refund = await self.refunds.get(refund_id)
        if refund is None:
            raise NotFoundError()
        transaction = await self.transactions.get(refund.transaction_id)

        if refund.status != RefundStatus.REQUESTED.value:
            raise InvalidTransitionError(
                f"Refund is already {refund.status}", current_status=transaction.status
            )

        now = self.clock()
        if outcome == RefundStatus.PROCESSED.value:
            await self._transition(
                transaction, TransactionStatus.REFUNDED, actor.user_id, refund.reason, now,
                confirmed_at=None, refunded_at=now,
            )
            self.refunds.close(refund, RefundStatus.PROCESSED, at=now)
            for other in await self.refunds.open_requests(transaction.id):
                if other.id != refund.id:
                    self.refunds.close(other, RefundStatus.REJECTED, at=now)
                    await self._emit_refund(transaction, other)
        else:
            await self.transactions.compare_and_set(transaction, transaction.version, updated_at=now)
            self.refunds.close(refund, RefundStatus.REJECTED, at=now)

        await self._emit_refund(transaction, refund)
        await self.session.commit()

        logger.info(f"Refund {refund.id} {refund.status} by {actor.user_id}")
        return transaction, refund

    # Expiry

    async def expire(
        self,
        transaction_id: UUID,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Transaction]:
        """
        Refund an escrow hold whose deadline has passed.

        Returns None when there is nothing to do: already refunded, or the
        hold has not expired yet.
        """
        now = now or self.clock()
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError()

        if transaction.status == TransactionStatus.REFUNDED.value:
            return None
        self._check_version(transaction, expected_version)
        if transaction.status != TransactionStatus.IN_ESCROW.value:
            raise InvalidTransitionError(
                f"Cannot expire a transaction that is {transaction.status}",
                current_status=transaction.status,
            )
        if transaction.escrow_expires_at is None or now < transaction.escrow_expires_at:
            return None

        await self._transition(
            transaction, TransactionStatus.REFUNDED, None, EXPIRY_REASON, now,
            refunded_at=now,
        )
        refund = await self.refunds.add(transaction.id, EXPIRY_REASON, RefundStatus.PROCESSED, at=now)
        await self._emit_refund(transaction, refund)
        await self.session.commit()

        logger.info(f"Transaction {transaction.id} auto-refunded, hold expired at {transaction.escrow_expires_at}")
        return transaction

    # Reads

    async def get_transaction(self, actor: Actor, transaction_id: UUID) -> Transaction:
        return await self._load(actor, transaction_id, Capability.VIEW)

    async def list_transactions(
        self, actor: Actor, role: Optional[str] = None, status: Optional[str] = None
    ) -> list[Transaction]:
        if role not in (None, "buyer", "provider"):
            raise ValidationError("role must be 'buyer' or 'provider'")
        if status is not None and status not in {s.value for s in TransactionStatus}:
            raise ValidationError(f"Unknown status: {status}")

        if role is None and actor.is_staff:
            return await self.transactions.list_for(status=status)
        return await self.transactions.list_for(actor.user_id, as_role=role, status=status)

    async def list_refunds(self, actor: Actor, transaction_id: UUID) -> list[Refund]:
        transaction = await self._load(actor, transaction_id, Capability.VIEW)
        return await self.refunds.list_for(transaction.id)

    async def history(self, actor: Actor, transaction_id: UUID) -> list[TransitionRecord]:
        transaction = await self._load(actor, transaction_id, Capability.VIEW)
        return await self.transactions.history(transaction.id)

    async def provider_summary(self, actor: Actor, provider_id: Optional[str] = None) -> ProviderSummary:
        """Escrow and earnings totals; providers see their own, staff any provider."""
        provider_id = provider_id or actor.user_id
        if provider_id != actor.user_id:
            require_staff(actor, Capability.VIEW)

        totals = await self.transactions.provider_totals(provider_id)
        in_escrow_count, in_escrow_amount = totals.get(TransactionStatus.IN_ESCROW.value, (0, 0))
        completed_count, completed_amount = totals.get(TransactionStatus.COMPLETED.value, (0, 0))
        return ProviderSummary(
            provider_id=provider_id,
            in_escrow_count=in_escrow_count,
            in_escrow_amount=in_escrow_amount,
            completed_count=completed_count,
            completed_amount=completed_amount,
        )

    # Internals

    async def _load(
        self,
        actor: Actor,
        transaction_id: UUID,
        capability: Capability,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError()
        authorize(actor, transaction, capability)
        self._check_version(transaction, expected_version)
        return transaction

    @staticmethod
    def _check_version(transaction: Transaction, expected_version: Optional[int]) -> None:
        if expected_version is not None and transaction.version != expected_version:
            raise StaleStateError(
                f"Transaction is at version {transaction.version}, not {expected_version}",
                current_status=transaction.status,
            )

    async def _transition(
        self,
        transaction: Transaction,
        to_status: TransactionStatus,
        actor_id: Optional[str],
        reason: Optional[str],
        now: datetime,
        **values,
    ) -> Transaction:
        from_status = transaction.status
        if not is_allowed(from_status, to_status.value):
            raise InvalidTransitionError(
                f"Cannot move from {from_status} to {to_status.value}",
                current_status=from_status,
            )

        await self.transactions.compare_and_set(
            transaction, transaction.version,
            status=to_status.value, updated_at=now, **values,
        )
        await self.transactions.record_transition(
            transaction.id, transaction.version, from_status, to_status.value,
            actor_id=actor_id, reason=reason, at=now,
        )
        await self._emit_status(transaction, from_status, actor_id)

        logger.debug(f"Transaction {transaction.id}: {from_status} -> {to_status.value}")
        return transaction

    async def _release_if_due(self, transaction: Transaction, now: datetime) -> None:
        """Complete right away when there is no settlement delay."""
        if self.settlement_delay <= timedelta(0):
            await self._transition(
                transaction, TransactionStatus.COMPLETED, None, "funds released", now,
                completed_at=now,
            )

    async def _emit_status(self, transaction: Transaction, from_status: Optional[str], actor_id: Optional[str]):
        event = TransactionStatusChangedEvent(
            event_type=STATUS_EVENT_TYPES[transaction.status],
            aggregate_id=transaction.id,
            correlation_id=transaction.id,
            transaction_id=transaction.id,
            from_status=from_status,
            to_status=transaction.status,
            buyer_id=transaction.buyer_id,
            provider_id=transaction.provider_id,
            amount=transaction.amount,
            currency=transaction.currency,
            actor_id=actor_id,
            metadata={"transaction_version": transaction.version},
        )
        await self._save_event(event)

    async def _emit_refund(self, transaction: Transaction, refund: Refund):
        event = RefundEvent(
            event_type=REFUND_EVENT_TYPES[refund.status],
            aggregate_id=transaction.id,
            correlation_id=transaction.id,
            transaction_id=transaction.id,
            refund_id=refund.id,
            status=refund.status,
            reason=refund.reason,
        )
        await self._save_event(event)

    async def _save_event(self, event) -> None:
        if self.settings.outbox_enabled:
            await save_event_to_outbox(self.session, event)
