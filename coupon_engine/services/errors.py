from __future__ import annotations

import enum


class RedemptionFailure(str, enum.Enum):
    COUPON_NOT_FOUND = "coupon_not_found"
    COUPON_EXPIRED_OR_INACTIVE = "coupon_expired_or_inactive"
    CAMPAIGN_INACTIVE = "campaign_inactive"
    BELOW_MINIMUM_PURCHASE = "below_minimum_purchase"
    ITEMS_NOT_ELIGIBLE = "items_not_eligible"
    USER_NOT_ELIGIBLE = "user_not_eligible"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    GLOBAL_LIMIT_REACHED = "global_limit_reached"
    CONCURRENT_LIMIT_EXCEEDED = "concurrent_limit_exceeded"


FAILURE_MESSAGES: dict[RedemptionFailure, str] = {
    RedemptionFailure.COUPON_NOT_FOUND: "Coupon not found or does not belong to you",
    RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE: "This coupon has expired or is no longer active",
    RedemptionFailure.CAMPAIGN_INACTIVE: "This promotion is no longer available",
    RedemptionFailure.BELOW_MINIMUM_PURCHASE: "Your cart does not reach the minimum purchase amount for this coupon",
    RedemptionFailure.ITEMS_NOT_ELIGIBLE: "This coupon is not applicable to any items in your cart",
    RedemptionFailure.USER_NOT_ELIGIBLE: "Your account is not eligible for this coupon",
    RedemptionFailure.PER_USER_LIMIT_REACHED: "You have already used this coupon the maximum number of times",
    RedemptionFailure.GLOBAL_LIMIT_REACHED: "This coupon has reached its usage limit",
    RedemptionFailure.CONCURRENT_LIMIT_EXCEEDED: "This coupon was just used up by another checkout, please try again",
}


class CouponEngineError(Exception):
    """Base class for administrative and store-level errors."""


class CampaignNotFound(CouponEngineError):
    def __init__(self, identifier: object) -> None:
        super().__init__(f"Coupon campaign not found: {identifier}")
        self.identifier = identifier


class CouponNotFound(CouponEngineError):
    def __init__(self, coupon_code: str) -> None:
        super().__init__(f"Coupon not found: {coupon_code}")
        self.coupon_code = coupon_code


class LedgerEntryNotFound(CouponEngineError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Coupon ledger entry not found: {entry_id}")
        self.entry_id = entry_id


class InvalidCampaignSpec(CouponEngineError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class DuplicateIssuance(CouponEngineError):
    def __init__(self, campaign_id: int, user_id: str) -> None:
        super().__init__(f"User {user_id} already has a coupon for campaign {campaign_id}")
        self.campaign_id = campaign_id
        self.user_id = user_id


class CodeGenerationFailed(CouponEngineError):
    pass


class LimitExceeded(CouponEngineError):
    """A conditional counter update matched no row."""


class StoreUnavailable(CouponEngineError):
    """The persistent store could not be reached."""
