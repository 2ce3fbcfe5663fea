from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CartItemPayload(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    category_id: Optional[str] = Field(default=None, max_length=64)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


class UserProfilePayload(BaseModel):
    flags: List[str] = Field(default_factory=list)
    prior_order_count: Optional[int] = Field(default=None, ge=0)
    user_groups: List[str] = Field(default_factory=list)


class RedemptionRequest(BaseModel):
    coupon_code: str = Field(..., min_length=1, max_length=50)
    user_id: str = Field(..., min_length=1, max_length=64)
    cart_subtotal: Decimal = Field(..., ge=0)
    items: List[CartItemPayload] = Field(default_factory=list)
    profile: UserProfilePayload = Field(default_factory=UserProfilePayload)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class RedemptionResponse(BaseModel):
    success: bool
    coupon_code: str
    failure: Optional[str] = None
    message: str
    campaign_id: Optional[int] = None
    entry_id: Optional[int] = None
    discount_amount: Decimal
    free_shipping: bool
    discounted_subtotal: Optional[Decimal] = None
    current_usage_count: Optional[int] = None
    global_usage_count: Optional[int] = None
    remaining_user_uses: Optional[int] = None
    applicable_items: Optional[int] = None
    committed: bool
    replayed: bool


class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    code_prefix: Optional[str] = Field(default=None, max_length=20)
    discount_type: str
    discount_value: Decimal = Decimal("0")
    max_discount_cap: Optional[Decimal] = None
    min_purchase_amount: Optional[Decimal] = None
    eligibility_tags: List[str] = Field(default_factory=list)
    target_user_groups: List[str] = Field(default_factory=list)
    applicable_category_ids: List[str] = Field(default_factory=list)
    applicable_item_ids: List[str] = Field(default_factory=list)
    max_usage_per_user: int = 1
    max_global_usage: Optional[int] = None
    is_unique_per_user: bool = True
    is_active: bool = True
    valid_from: datetime
    valid_until: datetime


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    code_prefix: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    max_discount_cap: Optional[Decimal] = None
    min_purchase_amount: Optional[Decimal] = None
    eligibility_tags: Optional[List[str]] = None
    target_user_groups: Optional[List[str]] = None
    applicable_category_ids: Optional[List[str]] = None
    applicable_item_ids: Optional[List[str]] = None
    max_usage_per_user: Optional[int] = None
    max_global_usage: Optional[int] = None
    is_unique_per_user: Optional[bool] = None
    is_active: Optional[bool] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class CampaignRead(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    code_prefix: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    max_discount_cap: Optional[Decimal] = None
    min_purchase_amount: Optional[Decimal] = None
    eligibility_tags: List[str] = Field(default_factory=list)
    target_user_groups: List[str] = Field(default_factory=list)
    applicable_category_ids: List[str] = Field(default_factory=list)
    applicable_item_ids: List[str] = Field(default_factory=list)
    max_usage_per_user: int
    max_global_usage: Optional[int] = None
    is_unique_per_user: bool
    global_usage_count: int
    is_active: bool
    valid_from: datetime
    valid_until: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CampaignListResponse(BaseModel):
    items: List[CampaignRead]
    total: int
    page: int
    limit: int


class GenerateCodesRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=1000)
    codes_per_user: int = Field(default=1, ge=1, le=10)


class LedgerEntryRead(BaseModel):
    id: int
    campaign_id: int
    user_id: str
    coupon_code: str
    current_usage_count: int
    is_active: bool
    expires_at: datetime
    assigned_at: Optional[datetime] = None
    last_usage_at: Optional[datetime] = None
    state: Optional[str] = None

    model_config = {"from_attributes": True}


class LedgerEntryUpdate(BaseModel):
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None

    model_config = {"extra": "forbid"}


class GenerateCodesResponse(BaseModel):
    issued: List[LedgerEntryRead]
    failures: List[Dict[str, str]]


class LedgerEntryListResponse(BaseModel):
    items: List[LedgerEntryRead]
    total: int
    page: int
    limit: int


class CampaignSummary(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    max_discount_cap: Optional[Decimal] = None
    min_purchase_amount: Optional[Decimal] = None
    valid_until: datetime

    model_config = {"from_attributes": True}


class UserCouponRead(BaseModel):
    coupon_code: str
    state: str
    current_usage_count: int
    remaining_uses: int
    expires_at: datetime
    campaign: CampaignSummary


class UsageStatsResponse(BaseModel):
    campaign_id: int
    current_usage: int
    max_usage: Optional[int] = None
    remaining_usage: Optional[int] = None
    usage_percentage: int
    total_coupons: int
    total_usage: int
    exhausted_coupons: int
    active_coupons: int
    expired_coupons: int


class MetricsResponse(BaseModel):
    requests: Dict[str, Dict[str, Any]]
    redemptions: Dict[str, Any]
