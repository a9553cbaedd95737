"""Tests for the expiry sweeper."""
from datetime import timedelta

import pytest
from sqlalchemy import select

from services.escrow_service.models import Refund, Transaction, TransactionStatus
from services.escrow_service.state_machine import EscrowEngine
from services.escrow_service.sweeper import ExpirySweeper
from shared.config import Settings

PROVIDER_ID = "provider-001"


@pytest.fixture
def sweeper(database, settings, clock) -> ExpirySweeper:
    return ExpirySweeper(database.session_factory, settings, clock=clock)


async def load(database, transaction_id):
    async with database.session_factory() as session:
        transaction = await session.get(Transaction, transaction_id)
        refunds = (
            await session.execute(select(Refund).where(Refund.transaction_id == transaction_id))
        ).scalars().all()
        return transaction, list(refunds)


class TestExpiry:
    """in_escrow holds past their deadline are refunded."""

    async def test_refunds_expired_hold_once(self, sweeper, database, held, clock) -> None:
        result = await sweeper.sweep_once(clock() + timedelta(hours=2, minutes=1))

        assert result.refunded == 1
        transaction, refunds = await load(database, held.id)
        assert transaction.status == TransactionStatus.REFUNDED.value
        assert transaction.refunded_at is not None
        assert transaction.confirmed_at is None
        assert len(refunds) == 1
        assert refunds[0].status == "processed"
        assert refunds[0].reason == "escrow expired"

    async def test_second_sweep_is_noop(self, sweeper, database, held, clock) -> None:
        later = clock() + timedelta(hours=2, minutes=1)
        await sweeper.sweep_once(later)

        result = await sweeper.sweep_once(later + timedelta(minutes=5))

        assert result.refunded == 0
        assert result.failed == 0
        _, refunds = await load(database, held.id)
        assert len(refunds) == 1

    async def test_leaves_unexpired_hold(self, sweeper, database, held, clock) -> None:
        result = await sweeper.sweep_once(clock() + timedelta(hours=1, minutes=59))

        assert result.refunded == 0
        transaction, refunds = await load(database, held.id)
        assert transaction.status == TransactionStatus.IN_ESCROW.value
        assert refunds == []

    async def test_ignores_disputed_hold(self, sweeper, database, engine, held, buyer, clock) -> None:
        await engine.raise_dispute(buyer, held.id, "wrong address")

        result = await sweeper.sweep_once(clock() + timedelta(hours=3))

        assert result.refunded == 0
        transaction, _ = await load(database, held.id)
        assert transaction.status == TransactionStatus.DISPUTED.value

    async def test_expire_on_refunded_is_noop(self, engine, held, clock) -> None:
        later = clock() + timedelta(hours=3)
        assert await engine.expire(held.id, now=later) is not None
        assert await engine.expire(held.id, now=later) is None

    async def test_one_failure_does_not_stop_batch(
        self, sweeper, database, engine, buyer, gateway, clock, monkeypatch
    ) -> None:
        first = await engine.create_booking(buyer, PROVIDER_ID, 1500, "mpesa")
        await engine.authorize_payment(gateway, first.id)
        second = await engine.create_booking(buyer, "provider-002", 2500, "unitel")
        await engine.authorize_payment(gateway, second.id)

        original_expire = EscrowEngine.expire

        async def flaky_expire(self, transaction_id, now=None, expected_version=None):
            if transaction_id == first.id:
                raise RuntimeError("connection reset")
            return await original_expire(self, transaction_id, now=now, expected_version=expected_version)

        monkeypatch.setattr(EscrowEngine, "expire", flaky_expire)

        result = await sweeper.sweep_once(clock() + timedelta(hours=2, minutes=1))

        assert result.refunded == 1
        assert result.failed == 1
        first_after, _ = await load(database, first.id)
        second_after, _ = await load(database, second.id)
        assert first_after.status == TransactionStatus.IN_ESCROW.value
        assert second_after.status == TransactionStatus.REFUNDED.value


class TestSettlement:
    """Confirmed transactions are released after the settlement delay."""

    async def test_releases_after_delay(self, database, session, held, provider, clock) -> None:
        settings = Settings(
            database_dsn="sqlite+aiosqlite://",
            outbox_enabled=False,
            settlement_delay_seconds=600,
        )
        await EscrowEngine(session, settings, clock=clock).confirm_meeting(provider, held.id)
        sweeper = ExpirySweeper(database.session_factory, settings, clock=clock)

        early = await sweeper.sweep_once(clock() + timedelta(minutes=5))
        assert early.completed == 0

        due = await sweeper.sweep_once(clock() + timedelta(minutes=10))
        assert due.completed == 1
        transaction, refunds = await load(database, held.id)
        assert transaction.status == TransactionStatus.COMPLETED.value
        assert refunds == []


class TestLifecycle:
    """start/stop of the background task."""

    async def test_start_and_stop(self, sweeper) -> None:
        await sweeper.start()
        await sweeper.start()
        await sweeper.stop()
        await sweeper.stop()

        assert sweeper._task.done()
