"""Typed failures raised by the ledger and redemption engine."""

from __future__ import annotations

from typing import Any


class LoyaltyError(RuntimeError):
    """Base exception for loyalty engine failures.

    ``code`` is a stable identifier surfaced to API callers and ``status_code``
    the HTTP status the API layer maps the failure to. Domain rejections are
    never retried; only ``retryable`` failures may be attempted again.
    """

    code = "loyalty_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def as_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail["context"] = {key: str(value) for key, value in self.context.items()}
        return detail


class LoyaltyValidationError(LoyaltyError):
    """Raised for malformed or out-of-range input."""

    code = "validation_error"
    status_code = 400


class NotFoundError(LoyaltyError):
    code = "not_found"
    status_code = 404


class InsufficientBalanceError(LoyaltyError):
    """Raised when a debit would drive an account balance below zero."""

    code = "insufficient_balance"
    status_code = 409

    def __init__(self, message: str, *, balance: int, requested: int, **context: Any) -> None:
        super().__init__(message, balance=balance, requested=requested, **context)
        self.balance = balance
        self.requested = requested


class RewardUnavailableError(LoyaltyError):
    """Raised when a reward is inactive or outside its validity window."""

    code = "reward_unavailable"
    status_code = 409


class UsageLimitExceededError(LoyaltyError):
    code = "usage_limit_exceeded"
    status_code = 409


class OrderTooSmallError(LoyaltyError):
    code = "order_too_small"
    status_code = 422


class AlreadyUsedError(LoyaltyError):
    """Raised when consuming a code that has already been consumed."""

    code = "already_used"
    status_code = 409

    def __init__(self, message: str, *, order_reference: str | None = None, **context: Any) -> None:
        super().__init__(message, order_reference=order_reference, **context)
        self.order_reference = order_reference


class RedemptionExpiredError(LoyaltyError):
    """Raised for expired codes; callers must request a fresh redemption."""

    code = "expired"
    status_code = 410


class ConflictRetryableError(LoyaltyError):
    """Raised when concurrent modification persisted past the retry budget."""

    code = "conflict_retryable"
    status_code = 503
    retryable = True


class StorageUnavailableError(LoyaltyError):
    """Raised for infrastructure failures; no partial ledger state is visible."""

    code = "storage_unavailable"
    status_code = 503
    retryable = True


class TierConfigurationError(LoyaltyValidationError):
    """Raised when a tier table does not partition the non-negative integers."""

    code = "invalid_tier_configuration"


__all__ = [
    "AlreadyUsedError",
    "ConflictRetryableError",
    "InsufficientBalanceError",
    "LoyaltyError",
    "LoyaltyValidationError",
    "NotFoundError",
    "OrderTooSmallError",
    "RedemptionExpiredError",
    "RewardUnavailableError",
    "StorageUnavailableError",
    "TierConfigurationError",
    "UsageLimitExceededError",
]
