"""
Expiry sweeper for escrow holds.

Periodically refunds in_escrow transactions whose escrow_expires_at has
passed and releases confirmed transactions whose settlement delay elapsed.
All state comes from the database, so a restart loses nothing. Each
transaction is handled in its own session and commit; one failure is logged
and the rest of the batch continues.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from shared.config import Settings

from .errors import EscrowError
from .state_machine import Clock, EscrowEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome counts of one sweep cycle."""
    refunded: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0


class ExpirySweeper:
    """Background task that drives time-based transitions through the engine."""

    def __init__(
        self,
        session_factory,
        settings: Settings,
        clock: Clock = datetime.utcnow,
    ):
        """
        Initialize the sweeper.

        Args:
            session_factory: Async session factory for database access
            settings: Service settings (interval, batch size, settlement delay)
            clock: Source of the current naive-UTC time
        """
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.poll_interval = settings.sweep_interval_seconds
        self.batch_size = settings.sweep_batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the sweeper."""
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_and_sweep())
        logger.info(f"Expiry sweeper started (interval={self.poll_interval}s)")

    async def stop(self):
        """Stop the sweeper."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Expiry sweeper stopped")

    async def _poll_and_sweep(self):
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error in expiry sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one cycle: refund expired holds, then release due settlements."""
        now = now or self.clock()
        result = SweepResult()

        async with self.session_factory() as session:
            engine = EscrowEngine(session, self.settings, clock=lambda: now)
            expired = await engine.transactions.find_expired(now, self.batch_size)
            settle_before = now - timedelta(seconds=self.settings.settlement_delay_seconds)
            settleable = await engine.transactions.find_settleable(settle_before, self.batch_size)

        for transaction_id, version in expired:
            outcome = await self._apply(transaction_id, version, now, expire=True)
            if outcome is True:
                result.refunded += 1
            elif outcome is None:
                result.skipped += 1
            else:
                result.failed += 1

        for transaction_id, version in settleable:
            outcome = await self._apply(transaction_id, version, now, expire=False)
            if outcome is True:
                result.completed += 1
            elif outcome is None:
                result.skipped += 1
            else:
                result.failed += 1

        if expired or settleable:
            logger.info(
                f"Sweep at {now.isoformat()}: refunded={result.refunded}, "
                f"completed={result.completed}, skipped={result.skipped}, failed={result.failed}"
            )
        return result

    async def _apply(self, transaction_id, version: int, now: datetime, expire: bool) -> Optional[bool]:
        """True if applied, None if nothing to do, False if it failed."""
        async with self.session_factory() as session:
            engine = EscrowEngine(session, self.settings, clock=lambda: now)
            try:
                if expire:
                    applied = await engine.expire(transaction_id, now=now, expected_version=version)
                else:
                    applied = await engine.complete(transaction_id, now=now, expected_version=version)
                return True if applied is not None else None
            except EscrowError as e:
                await session.rollback()
                logger.warning(
                    f"Sweep skipped transaction {transaction_id}: {e.kind} "
                    f"({e}, current_status={e.current_status})"
                )
                return False
            except Exception as e:
                await session.rollback()
                logger.error(f"Sweep failed for transaction {transaction_id}: {str(e)}", exc_info=True)
                return False
