from __future__ import annotations

import enum

import sqlalchemy as sa
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from coupon_engine.core.config import MONEY_SCALE
from coupon_engine.core.database import Base


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class Campaign(Base):
    __tablename__ = "coupon_campaigns"
    __table_args__ = (
        CheckConstraint("global_usage_count >= 0", name="ck_coupon_campaigns_usage_non_negative"),
        CheckConstraint(
            "max_global_usage IS NULL OR global_usage_count <= max_global_usage",
            name="ck_coupon_campaigns_usage_within_cap",
        ),
        CheckConstraint("max_usage_per_user >= 1", name="ck_coupon_campaigns_per_user_positive"),
        CheckConstraint("valid_from <= valid_until", name="ck_coupon_campaigns_window"),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    slug = Column(String(120), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    code_prefix = Column(String(20), nullable=True)

    discount_type = Column(String(20), nullable=False)
    discount_value = Column(Numeric(12, MONEY_SCALE), nullable=False, default=0)
    max_discount_cap = Column(Numeric(12, MONEY_SCALE), nullable=True)
    min_purchase_amount = Column(Numeric(12, MONEY_SCALE), nullable=True)

    eligibility_tags = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)
    target_user_groups = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)
    applicable_category_ids = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)
    applicable_item_ids = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)

    max_usage_per_user = Column(Integer, nullable=False, default=1)
    max_global_usage = Column(Integer, nullable=True)
    is_unique_per_user = Column(Boolean, nullable=False, default=True)
    global_usage_count = Column(Integer, nullable=False, default=0)

    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    ledger_entries = relationship("CouponLedgerEntry", back_populates="campaign")
