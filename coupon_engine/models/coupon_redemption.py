from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from coupon_engine.core.config import MONEY_SCALE
from coupon_engine.core.database import Base


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("ledger_entry_id", "idempotency_key", name="uq_coupon_redemptions_entry_key"),
    )

    id = Column(Integer, primary_key=True)
    ledger_entry_id = Column(Integer, ForeignKey("coupon_ledger_entries.id"), nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("coupon_campaigns.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    idempotency_key = Column(String(128), nullable=True)

    cart_subtotal = Column(Numeric(12, MONEY_SCALE), nullable=False)
    discount_amount = Column(Numeric(12, MONEY_SCALE), nullable=False)
    free_shipping = Column(Boolean, nullable=False, default=False)
    usage_count_after = Column(Integer, nullable=False)
    global_usage_after = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    ledger_entry = relationship("CouponLedgerEntry", back_populates="redemptions")
