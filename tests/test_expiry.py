from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from pointsledger_api.models.loyalty import LoyaltyTransactionDirection, LoyaltyTransactionKind
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.services.loyalty import ExpirySweeper, LedgerService
from pointsledger_api.services.loyalty.expiry import build_lots, expirable_points

NOW = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=400)


def _txn(sequence, direction, amount, occurred_at):
    return SimpleNamespace(
        sequence=sequence,
        direction=direction,
        amount=amount,
        occurred_at=occurred_at,
    )


def test_debits_deplete_oldest_lots_first() -> None:
    credit = LoyaltyTransactionDirection.CREDIT
    debit = LoyaltyTransactionDirection.DEBIT
    history = [
        _txn(3, debit, 70, NOW - timedelta(days=10)),
        _txn(1, credit, 50, LONG_AGO),
        _txn(2, credit, 100, NOW - timedelta(days=20)),
    ]

    lots = build_lots(history)

    assert [(lot.sequence, lot.remaining) for lot in lots] == [(2, 80)]
    assert expirable_points(history, cutoff=NOW - timedelta(days=365)) == 0
    assert expirable_points(history, cutoff=NOW) == 80


@pytest.mark.asyncio
async def test_sweep_expires_aged_points_once(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("mia", 120, occurred_at=LONG_AGO)
        await ledger.append_earn("mia", 30, occurred_at=NOW - timedelta(days=5))

        sweeper = ExpirySweeper(session)
        expired = await sweeper.sweep_account("mia", now=NOW, expiry_days=365)
        assert expired == 120

        balance = await ledger.get_balance("mia")
        assert balance.balance == 30
        assert balance.lifetime_earned == 150

        history = await ledger.list_transactions("mia", kinds=[LoyaltyTransactionKind.EXPIRE])
        assert [item.amount for item in history.items] == [120]

        assert await sweeper.sweep_account("mia", now=NOW, expiry_days=365) == 0
        assert (await ledger.get_balance("mia")).balance == 30


@pytest.mark.asyncio
async def test_spends_consume_oldest_points_before_expiry(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("noah", 100, occurred_at=LONG_AGO)
        await ledger.append_earn("noah", 100, occurred_at=NOW - timedelta(days=30))
        await ledger.append_spend("noah", 60, occurred_at=NOW - timedelta(days=20))

        expired = await ExpirySweeper(session).sweep_account("noah", now=NOW, expiry_days=365)

        assert expired == 40
        assert (await ledger.get_balance("noah")).balance == 100


@pytest.mark.asyncio
async def test_sweep_all_pages_through_accounts(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        for customer_id in ("olga", "pete", "quinn"):
            await ledger.append_earn(customer_id, 40, occurred_at=LONG_AGO)
        await ledger.append_earn("rose", 40, occurred_at=NOW - timedelta(days=1))

        summary = await ExpirySweeper(session).sweep_all(now=NOW, batch_size=2)

        assert summary.accounts_scanned == 4
        assert summary.accounts_expired == 3
        assert summary.points_expired == 120
        assert summary.failures == []

        for customer_id in ("olga", "pete", "quinn"):
            folded = await ledger.fold_balance(customer_id)
            assert folded.balance == 0
        assert (await ledger.get_balance("rose")).balance == 40

        again = await ExpirySweeper(session).sweep_all(now=NOW, batch_size=2)
        assert again.accounts_scanned == 1
        assert again.points_expired == 0

    sweeps = get_loyalty_store().snapshot().sweeps
    assert sweeps["runs"] == 2
    assert sweeps["points_expired"] == 120
