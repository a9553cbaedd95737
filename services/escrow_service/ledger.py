"""Refund ledger: append-only refund rows under a transaction."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidTransitionError
from .models import Refund, RefundStatus


class RefundLedger:
    """Refund rows are only ever inserted or moved out of 'requested'."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        transaction_id: UUID,
        reason: str,
        status: RefundStatus = RefundStatus.REQUESTED,
        at: Optional[datetime] = None,
    ) -> Refund:
        at = at or datetime.utcnow()
        refund = Refund(
            transaction_id=transaction_id,
            reason=reason,
            status=status.value,
            created_at=at,
            processed_at=at if status != RefundStatus.REQUESTED else None,
        )
        self.session.add(refund)
        await self.session.flush()
        return refund

    async def get(self, refund_id: UUID) -> Optional[Refund]:
        result = await self.session.execute(
            select(Refund).where(Refund.id == refund_id)
        )
        return result.scalar_one_or_none()

    async def list_for(self, transaction_id: UUID) -> list[Refund]:
        result = await self.session.execute(
            select(Refund)
            .where(Refund.transaction_id == transaction_id)
            .order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    async def open_requests(self, transaction_id: UUID) -> list[Refund]:
        result = await self.session.execute(
            select(Refund)
            .where(
                Refund.transaction_id == transaction_id,
                Refund.status == RefundStatus.REQUESTED.value,
            )
            .order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    def close(self, refund: Refund, status: RefundStatus, at: Optional[datetime] = None) -> Refund:
        """Move a requested refund to processed or rejected."""
        if refund.status != RefundStatus.REQUESTED.value:
            raise InvalidTransitionError(f"Refund {refund.id} is already {refund.status}")
        refund.status = status.value
        refund.processed_at = at or datetime.utcnow()
        return refund
