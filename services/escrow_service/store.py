"""Persistence for transactions, their transition history and provider profiles."""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StaleStateError
from .models import ProviderProfile, Transaction, TransactionStatus, TransitionRecord

logger = logging.getLogger(__name__)


class TransactionStore:
    """Reads and version-checked writes of transaction rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, transaction_id: UUID) -> Optional[Transaction]:
        """Fetch a transaction, bypassing anything cached in the session."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, transaction: Transaction) -> Transaction:
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def compare_and_set(
        self,
        transaction: Transaction,
        expected_version: int,
        **values,
    ) -> Transaction:
        """
        Write new column values only if the row is still at expected_version.

        Raises:
            StaleStateError: another writer committed first; carries the
                status that is persisted now
        """
        values["version"] = expected_version + 1
        values.setdefault("updated_at", datetime.utcnow())

        result = await self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction.id,
                Transaction.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            current = await self.get(transaction.id)
            current_status = current.status if current else None
            logger.warning(
                f"Stale write on transaction {transaction.id}: "
                f"expected version {expected_version}, now status={current_status}"
            )
            raise StaleStateError(
                "Transaction was modified concurrently",
                current_status=current_status,
            )

        await self.session.refresh(transaction)
        return transaction

    async def list_for(
        self,
        user_id: Optional[str] = None,
        as_role: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Transaction]:
        """List transactions, newest first; user_id None means all."""
        query = select(Transaction)

        if user_id is not None:
            if as_role == "buyer":
                query = query.where(Transaction.buyer_id == user_id)
            elif as_role == "provider":
                query = query.where(Transaction.provider_id == user_id)
            else:
                query = query.where(
                    or_(Transaction.buyer_id == user_id, Transaction.provider_id == user_id)
                )

        if status is not None:
            query = query.where(Transaction.status == status)

        result = await self.session.execute(
            query.order_by(Transaction.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def find_expired(self, now: datetime, limit: int) -> list[tuple[UUID, int]]:
        """(id, version) of escrow holds whose deadline has passed."""
        result = await self.session.execute(
            select(Transaction.id, Transaction.version)
            .where(
                Transaction.status == TransactionStatus.IN_ESCROW.value,
                Transaction.escrow_expires_at <= now,
            )
            .order_by(Transaction.escrow_expires_at)
            .limit(limit)
        )
        return [(row.id, row.version) for row in result.all()]

    async def find_settleable(self, confirmed_before: datetime, limit: int) -> list[tuple[UUID, int]]:
        """(id, version) of confirmed transactions due for release."""
        result = await self.session.execute(
            select(Transaction.id, Transaction.version)
            .where(
                Transaction.status == TransactionStatus.CONFIRMED.value,
                Transaction.confirmed_at <= confirmed_before,
            )
            .order_by(Transaction.confirmed_at)
            .limit(limit)
        )
        return [(row.id, row.version) for row in result.all()]

    async def provider_totals(self, provider_id: str) -> dict[str, tuple[int, int]]:
        """(count, amount sum) per status for one provider's transactions."""
        result = await self.session.execute(
            select(
                Transaction.status,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount), 0),
            )
            .where(Transaction.provider_id == provider_id)
            .group_by(Transaction.status)
        )
        return {status: (count, int(total)) for status, count, total in result.all()}

    async def record_transition(
        self,
        transaction_id: UUID,
        version: int,
        from_status: Optional[str],
        to_status: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> TransitionRecord:
        record = TransitionRecord(
            transaction_id=transaction_id,
            version=version,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            reason=reason,
            created_at=at or datetime.utcnow(),
        )
        self.session.add(record)
        return record

    async def history(self, transaction_id: UUID) -> list[TransitionRecord]:
        result = await self.session.execute(
            select(TransitionRecord)
            .where(TransitionRecord.transaction_id == transaction_id)
            .order_by(TransitionRecord.version)
        )
        return list(result.scalars().all())


class ProviderDirectory:
    """Provider profiles that bookings are checked against."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[ProviderProfile]:
        result = await self.session.execute(
            select(ProviderProfile).where(ProviderProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        user_id: str,
        approved_by: str,
        display_name: Optional[str] = None,
        price_per_hour: Optional[int] = None,
        is_approved: bool = True,
        is_visible: bool = True,
    ) -> ProviderProfile:
        profile = await self.get(user_id)
        if profile is None:
            profile = ProviderProfile(user_id=user_id)
            self.session.add(profile)

        if is_approved and not profile.is_approved:
            profile.approved_by = approved_by
            profile.approved_at = datetime.utcnow()
        elif not is_approved:
            profile.approved_by = None
            profile.approved_at = None

        profile.display_name = display_name
        profile.price_per_hour = price_per_hour
        profile.is_approved = is_approved
        profile.is_visible = is_visible
        profile.updated_at = datetime.utcnow()

        await self.session.commit()
        logger.info(
            f"Provider {user_id} updated by {approved_by} "
            f"(approved={is_approved}, visible={is_visible})"
        )
        return profile

    async def list_bookable(self, limit: int = 100) -> list[ProviderProfile]:
        result = await self.session.execute(
            select(ProviderProfile)
            .where(ProviderProfile.is_approved.is_(True), ProviderProfile.is_visible.is_(True))
            .order_by(ProviderProfile.display_name)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def set_visibility(self, user_id: str, is_visible: bool) -> Optional[ProviderProfile]:
        """Provider-controlled listing toggle; approval is left untouched."""
        profile = await self.get(user_id)
        if profile is None:
            return None

        profile.is_visible = is_visible
        profile.updated_at = datetime.utcnow()
        await self.session.commit()

        logger.info(f"Provider {user_id} set own visibility to {is_visible}")
        return profile
