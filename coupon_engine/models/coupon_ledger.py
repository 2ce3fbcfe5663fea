from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import relationship

from coupon_engine.core.database import Base


class CouponLedgerEntry(Base):
    __tablename__ = "coupon_ledger_entries"
    __table_args__ = (
        CheckConstraint("current_usage_count >= 0", name="ck_coupon_ledger_usage_non_negative"),
        Index("ix_coupon_ledger_user_campaign", "user_id", "campaign_id"),
    )

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("coupon_campaigns.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    coupon_code = Column(String(50), nullable=False, unique=True)
    # "<campaign_id>:<user_id>" for unique-per-user campaigns, NULL otherwise
    unique_owner_key = Column(String(100), nullable=True, unique=True)

    current_usage_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    assigned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_usage_at = Column(DateTime(timezone=True), nullable=True)

    campaign = relationship("Campaign", back_populates="ledger_entries")
    redemptions = relationship("CouponRedemption", back_populates="ledger_entry")
