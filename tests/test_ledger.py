from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from pointsledger_api.models.loyalty import (
    LoyaltyTransaction,
    LoyaltyTransactionDirection,
    LoyaltyTransactionKind,
    PointsAccount,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.services.loyalty import LedgerService
from pointsledger_api.services.loyalty.errors import (
    InsufficientBalanceError,
    LoyaltyValidationError,
)
from pointsledger_api.services.loyalty.ledger import decode_sequence_cursor, encode_sequence_cursor


@pytest.mark.asyncio
async def test_appends_keep_cached_balance_equal_to_fold(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)

        earn = await ledger.append_earn("cust-1", 150, "Welcome bonus")
        spend = await ledger.append_spend("cust-1", 40, "Coffee", related_redemption_id=uuid4())
        adjust = await ledger.append_adjust("cust-1", -10, "Goodwill reversal")
        expire = await ledger.append_expire("cust-1", 20, "Aged points")

        assert [earn.sequence, spend.sequence, adjust.sequence, expire.sequence] == [1, 2, 3, 4]
        assert spend.direction == LoyaltyTransactionDirection.DEBIT
        assert adjust.kind == LoyaltyTransactionKind.ADJUST
        assert adjust.amount == 10
        assert expire.balance_after == 80

        cached = await ledger.get_balance("cust-1")
        folded = await ledger.fold_balance("cust-1")

    assert cached.balance == folded.balance == 80
    assert cached.lifetime_earned == folded.lifetime_earned == 150
    assert cached.lifetime_spent == folded.lifetime_spent == 40
    assert cached.has_account and folded.has_account
    assert cached.version == folded.version == 4
    assert cached.last_activity_at is not None

    counters = get_loyalty_store().snapshot().ledger
    assert counters["appends:earn"] == 1
    assert counters["points:spend"] == 40


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("cust-2", 30)

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.append_spend("cust-2", 31)

        assert excinfo.value.balance == 30
        assert excinfo.value.requested == 31

        balance = await ledger.get_balance("cust-2")
        assert balance.balance == 30
        assert balance.version == 1

        rows = (await session.execute(select(LoyaltyTransaction))).scalars().all()
        assert len(rows) == 1


@pytest.mark.asyncio
async def test_debit_on_unknown_account_does_not_create_it(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.append_spend("ghost", 5)

        assert excinfo.value.balance == 0
        accounts = (await session.execute(select(PointsAccount))).scalars().all()
        assert accounts == []

        snapshot = await ledger.get_balance("ghost")
        assert snapshot.balance == 0
        assert snapshot.lifetime_earned == 0
        assert snapshot.has_account is False
        assert (await ledger.fold_balance("ghost")).has_account is False


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -3, True, 1.5])
async def test_non_positive_amounts_are_rejected(session_factory, amount) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)

        with pytest.raises(LoyaltyValidationError):
            await ledger.append_earn("cust-3", amount)

        with pytest.raises(LoyaltyValidationError):
            await ledger.append_adjust("cust-3", 0)


@pytest.mark.asyncio
async def test_adjustment_for_redemption_is_idempotent(session_factory) -> None:
    redemption_id = uuid4()
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("cust-4", 100)
        await ledger.append_spend("cust-4", 60, related_redemption_id=redemption_id)

        first = await ledger.append_adjust("cust-4", 60, "Refund", related_redemption_id=redemption_id)
        second = await ledger.append_adjust("cust-4", 60, "Refund", related_redemption_id=redemption_id)

        assert first.id == second.id
        balance = await ledger.get_balance("cust-4")
        assert balance.balance == 100
        # Refunds do not count as earned points.
        assert balance.lifetime_earned == 100


@pytest.mark.asyncio
async def test_transaction_history_paginates_newest_first(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        for amount in (10, 20, 30, 40, 50):
            await ledger.append_earn("cust-5", amount)
        await ledger.append_spend("cust-5", 5)

        first_page = await ledger.list_transactions("cust-5", limit=4)
        assert [item.sequence for item in first_page.items] == [6, 5, 4, 3]
        assert first_page.next_cursor is not None

        second_page = await ledger.list_transactions("cust-5", limit=4, cursor=first_page.next_cursor)
        assert [item.sequence for item in second_page.items] == [2, 1]
        assert second_page.next_cursor is None

        spends = await ledger.list_transactions("cust-5", kinds=[LoyaltyTransactionKind.SPEND])
        assert [item.amount for item in spends.items] == [5]

        empty = await ledger.list_transactions("nobody")
        assert empty.items == []


def test_sequence_cursor_round_trip_and_rejects_garbage() -> None:
    identifier = uuid4()
    assert decode_sequence_cursor(encode_sequence_cursor(7, identifier)) == (7, identifier)

    with pytest.raises(LoyaltyValidationError):
        decode_sequence_cursor("not-a-cursor")


@pytest.mark.asyncio
async def test_recent_transactions_span_accounts_newest_first(session_factory) -> None:
    start = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("cust-6", 100, occurred_at=start)
        await ledger.append_earn("cust-7", 70, occurred_at=start + timedelta(minutes=1))
        await ledger.append_spend("cust-6", 25, occurred_at=start + timedelta(minutes=2))
        await ledger.append_earn("cust-8", 10, occurred_at=start + timedelta(minutes=3))

        first_page = await ledger.list_recent_transactions(limit=3)
        assert [(item.account.customer_id, item.amount) for item in first_page.items] == [
            ("cust-8", 10),
            ("cust-6", 25),
            ("cust-7", 70),
        ]
        assert first_page.next_cursor is not None

        second_page = await ledger.list_recent_transactions(limit=3, cursor=first_page.next_cursor)
        assert [(item.account.customer_id, item.amount) for item in second_page.items] == [
            ("cust-6", 100)
        ]
        assert second_page.next_cursor is None

        spends = await ledger.list_recent_transactions(kinds=[LoyaltyTransactionKind.SPEND])
        assert [item.amount for item in spends.items] == [25]

        with pytest.raises(LoyaltyValidationError):
            await ledger.list_recent_transactions(cursor="not-a-cursor")


@pytest.mark.asyncio
async def test_account_list_pages_by_customer_id(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        for customer_id, amount in (("carol", 300), ("alice", 50), ("bob", 120)):
            await ledger.append_earn(customer_id, amount)
        await ledger.append_spend("carol", 200)

        first_page = await ledger.list_accounts(limit=2)
        assert [account.customer_id for account in first_page.items] == ["alice", "bob"]
        assert first_page.next_cursor is not None

        second_page = await ledger.list_accounts(limit=2, cursor=first_page.next_cursor)
        assert [account.customer_id for account in second_page.items] == ["carol"]
        assert second_page.items[0].lifetime_spent == 200
        assert second_page.next_cursor is None

        wealthy = await ledger.list_accounts(min_balance=100)
        assert [account.customer_id for account in wealthy.items] == ["bob", "carol"]
