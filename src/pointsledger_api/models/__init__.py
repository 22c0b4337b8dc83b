"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    DISCOUNT_REWARD_TYPES,
    LoyaltyDiscountType,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyReward,
    LoyaltyRewardStatus,
    LoyaltyRewardType,
    LoyaltySettingsVersion,
    LoyaltyTransaction,
    LoyaltyTransactionDirection,
    LoyaltyTransactionKind,
    PointsAccount,
)
