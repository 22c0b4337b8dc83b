"""Loyalty ledger, tier, catalog and redemption services."""

from .catalog import RewardCatalog, RewardTerms, compute_discount
from .config_store import ProgramConfig, ProgramConfigStore
from .errors import *  # noqa: F401,F403
from .expiry import ExpirySweeper, SweepSummary
from .ledger import AccountPage, BalanceSnapshot, LedgerService, TransactionPage
from .loyalty_service import (
    AccountSummary,
    AccountSummaryPage,
    EarnResult,
    LoyaltyService,
    LoyaltySnapshot,
)
from .redemptions import CodeCheck, RedemptionEngine, RedemptionPage, RedemptionReceipt
from .tiers import Tier, TierTable

__all__ = [
    "AccountPage",
    "AccountSummary",
    "AccountSummaryPage",
    "BalanceSnapshot",
    "CodeCheck",
    "EarnResult",
    "ExpirySweeper",
    "LedgerService",
    "LoyaltyService",
    "LoyaltySnapshot",
    "ProgramConfig",
    "ProgramConfigStore",
    "RedemptionEngine",
    "RedemptionPage",
    "RedemptionReceipt",
    "RewardCatalog",
    "RewardTerms",
    "SweepSummary",
    "Tier",
    "TierTable",
    "TransactionPage",
    "compute_discount",
]
