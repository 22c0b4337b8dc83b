from decimal import Decimal

import pytest

from pointsledger_api.services.loyalty import LedgerService, LoyaltyService, ProgramConfigStore
from pointsledger_api.services.loyalty.errors import OrderTooSmallError


@pytest.mark.asyncio
async def test_earn_applies_tier_multiplier_and_rounds_down(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("sam", 1000, "Migration balance")
        service = LoyaltyService(session)

        result = await service.earn("sam", Decimal("15.55"), order_reference="A-100")

        assert result.tier.name == "Silver"
        assert result.multiplier == Decimal("1.5")
        assert result.transaction.amount == 23
        assert result.transaction.metadata_json["order_reference"] == "A-100"

        snapshot = await service.get_account("sam")
        assert snapshot.balance == 1023
        assert snapshot.lifetime_earned == 1023
        assert snapshot.tier.name == "Silver"
        assert snapshot.next_tier.name == "Gold"
        assert snapshot.points_to_next_tier == 5000 - 1023
        assert snapshot.points_value == Decimal("102.30")


@pytest.mark.asyncio
async def test_small_orders_earn_nothing(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        with pytest.raises(OrderTooSmallError):
            await service.earn("tina", Decimal("9.99"))

        await ProgramConfigStore(session).update({"points_per_currency": "0.05"})
        with pytest.raises(OrderTooSmallError):
            await service.earn("tina", Decimal("10.00"))

        assert (await service.get_account("tina")).balance == 0


@pytest.mark.asyncio
async def test_transaction_history_is_newest_first(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("uma", 200)
        await ledger.append_adjust("uma", -20, "Correction")
        service = LoyaltyService(session)

        page = await service.get_transaction_history("uma", limit=10)
        assert [item.signed_amount for item in page.items] == [-20, 200]


@pytest.mark.asyncio
async def test_account_list_resolves_tiers_from_current_table(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("vera", 600)
        await ledger.append_earn("walt", 1500)
        await ledger.append_spend("walt", 400)
        service = LoyaltyService(session)

        page = await service.list_accounts()
        assert [(item.customer_id, item.tier.name) for item in page.items] == [
            ("vera", "Bronze"),
            ("walt", "Silver"),
        ]
        walt = page.items[1]
        assert (walt.balance, walt.lifetime_earned, walt.total_spent) == (1100, 1500, 400)

        await ProgramConfigStore(session).update_tiers(
            [
                {"name": "Member", "min_points": 0, "max_points": 500},
                {"name": "Insider", "min_points": 500, "max_points": None, "multiplier": "2"},
            ]
        )
        regraded = await service.list_accounts()
        assert [item.tier.name for item in regraded.items] == ["Insider", "Insider"]

        snapshot = await service.get_account("walt")
        assert snapshot.total_spent == 400
        assert snapshot.has_account is True
