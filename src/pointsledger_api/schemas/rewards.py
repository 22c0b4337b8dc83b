from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    TypeAdapter,
    field_validator,
    model_validator,
)

from pointsledger_api.models.loyalty import LoyaltyDiscountType, LoyaltyRewardStatus

# meta: schema: loyalty-reward


class OrderContext(BaseModel):
    """Order facts supplied by checkout when redeeming or consuming a code."""

    model_config = ConfigDict(populate_by_name=True)

    order_amount: Decimal = Field(..., alias="orderAmount", ge=0)
    delivery_fee: Decimal = Field(Decimal("0"), alias="deliveryFee", ge=0)
    order_reference: str | None = Field(None, alias="orderReference", max_length=128)


class _RewardSpecBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    points_cost: int = Field(..., alias="pointsCost", gt=0)
    min_order_amount: Decimal | None = Field(None, alias="minOrderAmount", ge=0)
    usage_limit: int | None = Field(None, alias="usageLimit", ge=1)
    starts_at: datetime = Field(..., alias="startsAt")
    ends_at: datetime = Field(..., alias="endsAt")
    status: LoyaltyRewardStatus = LoyaltyRewardStatus.ACTIVE

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_window(self):
        if self.ends_at < self.starts_at:
            raise ValueError("endsAt must not precede startsAt")
        return self


class FreeDeliveryRewardSpec(_RewardSpecBase):
    reward_type: Literal["free_delivery"] = Field(..., alias="rewardType")


class GiftRewardSpec(_RewardSpecBase):
    reward_type: Literal["gift"] = Field(..., alias="rewardType")


class _DiscountRewardSpec(_RewardSpecBase):
    discount_type: LoyaltyDiscountType = Field(..., alias="discountType")
    discount_value: Decimal = Field(..., alias="discountValue", gt=0)
    max_discount: Decimal | None = Field(None, alias="maxDiscount", gt=0)

    @model_validator(mode="after")
    def _check_percentage(self):
        if self.discount_type == LoyaltyDiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discounts cannot exceed 100")
        return self


class OrderDiscountRewardSpec(_DiscountRewardSpec):
    reward_type: Literal["order_discount"] = Field(..., alias="rewardType")


class DeliveryDiscountRewardSpec(_DiscountRewardSpec):
    reward_type: Literal["delivery_discount"] = Field(..., alias="rewardType")


class ProductDiscountRewardSpec(_DiscountRewardSpec):
    reward_type: Literal["product_discount"] = Field(..., alias="rewardType")


RewardSpec = Annotated[
    Union[
        FreeDeliveryRewardSpec,
        GiftRewardSpec,
        OrderDiscountRewardSpec,
        DeliveryDiscountRewardSpec,
        ProductDiscountRewardSpec,
    ],
    Field(discriminator="reward_type"),
]

reward_spec_adapter: TypeAdapter[RewardSpec] = TypeAdapter(RewardSpec)


def parse_reward_spec(payload: dict) -> RewardSpec:
    return reward_spec_adapter.validate_python(payload)


class RewardSpecPayload(RootModel[RewardSpec]):
    """Request body wrapper for the reward variants."""
