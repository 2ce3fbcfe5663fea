from coupon_engine.models.campaign import Campaign, DiscountType
from coupon_engine.models.coupon_ledger import CouponLedgerEntry
from coupon_engine.models.coupon_redemption import CouponRedemption
from coupon_engine.models.admin_audit_log import AdminAuditLog
