from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from coupon_engine.models.campaign import Campaign, DiscountType
from coupon_engine.models.coupon_ledger import CouponLedgerEntry
from coupon_engine.services.clock import Clock, as_utc, utcnow
from coupon_engine.services.discounts import ZERO, to_decimal
from coupon_engine.services.eligibility import parse_tags
from coupon_engine.services.errors import CampaignNotFound, InvalidCampaignSpec, LimitExceeded
from utils.slug import normalize_slug

logger = logging.getLogger(__name__)

CODE_PREFIX_PATTERN = re.compile(r"^[A-Z0-9-]{0,20}$")
SORTABLE_FIELDS = {
    "name": Campaign.name,
    "created_at": Campaign.created_at,
    "updated_at": Campaign.updated_at,
    "valid_from": Campaign.valid_from,
    "valid_until": Campaign.valid_until,
    "discount_value": Campaign.discount_value,
}
# global_usage_count only moves through increment/decrement
IMMUTABLE_FIELDS = {"id", "slug", "global_usage_count", "created_at", "updated_at"}


@dataclass
class CampaignSpec:
    name: str
    discount_type: str
    valid_from: datetime
    valid_until: datetime
    discount_value: Decimal = ZERO
    description: Optional[str] = None
    code_prefix: Optional[str] = None
    max_discount_cap: Optional[Decimal] = None
    min_purchase_amount: Optional[Decimal] = None
    eligibility_tags: list[str] = field(default_factory=list)
    target_user_groups: list[str] = field(default_factory=list)
    applicable_category_ids: list[str] = field(default_factory=list)
    applicable_item_ids: list[str] = field(default_factory=list)
    max_usage_per_user: int = 1
    max_global_usage: Optional[int] = None
    is_unique_per_user: bool = True
    is_active: bool = True


def _optional_decimal(value: Any, label: str, errors: list[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return to_decimal(value)
    except (InvalidOperation, ValueError):
        errors.append(f"{label} must be a number")
        return None


def normalize_campaign_fields(fields: Mapping[str, Any], *, global_usage_count: int = 0) -> dict[str, Any]:
    """Validate a full set of campaign fields and return the normalized values.

    Raises InvalidCampaignSpec listing every violated invariant.
    """
    errors: list[str] = []
    data = dict(fields)

    name = (data.get("name") or "").strip()
    if not 3 <= len(name) <= 100:
        errors.append("name must be between 3 and 100 characters")
    data["name"] = name

    description = data.get("description")
    if description is not None:
        description = description.strip() or None
        if description and len(description) > 500:
            errors.append("description cannot exceed 500 characters")
    data["description"] = description

    code_prefix = data.get("code_prefix")
    if code_prefix:
        code_prefix = code_prefix.strip().upper()
        if not CODE_PREFIX_PATTERN.match(code_prefix):
            errors.append("code_prefix may only contain uppercase letters, numbers and hyphens (max 20)")
    data["code_prefix"] = code_prefix or None

    try:
        discount_type = DiscountType(str(data.get("discount_type") or "").strip().upper())
    except ValueError:
        errors.append("discount_type must be PERCENTAGE, FIXED_AMOUNT or FREE_SHIPPING")
        discount_type = None
    data["discount_type"] = discount_type.value if discount_type else data.get("discount_type")

    value = _optional_decimal(data.get("discount_value"), "discount_value", errors)
    value = ZERO if value is None else value
    if discount_type is DiscountType.PERCENTAGE and not (ZERO < value <= Decimal("100")):
        errors.append("percentage discount_value must be greater than 0 and at most 100")
    elif discount_type is DiscountType.FIXED_AMOUNT and value <= ZERO:
        errors.append("fixed discount_value must be greater than 0")
    elif discount_type is DiscountType.FREE_SHIPPING:
        value = ZERO
    data["discount_value"] = value

    cap = _optional_decimal(data.get("max_discount_cap"), "max_discount_cap", errors)
    if cap is not None and cap <= ZERO:
        errors.append("max_discount_cap must be positive")
    data["max_discount_cap"] = cap

    minimum = _optional_decimal(data.get("min_purchase_amount"), "min_purchase_amount", errors)
    if minimum is not None and minimum < ZERO:
        errors.append("min_purchase_amount cannot be negative")
    data["min_purchase_amount"] = minimum

    per_user = data.get("max_usage_per_user")
    if per_user is None or int(per_user) < 1:
        errors.append("max_usage_per_user must be at least 1")
    else:
        data["max_usage_per_user"] = int(per_user)

    global_cap = data.get("max_global_usage")
    if global_cap is not None:
        global_cap = int(global_cap)
        if global_cap < 1:
            errors.append("max_global_usage must be a positive integer")
        elif global_cap < global_usage_count:
            errors.append(f"max_global_usage cannot be lower than the current usage ({global_usage_count})")
    data["max_global_usage"] = global_cap

    valid_from = as_utc(data.get("valid_from"))
    valid_until = as_utc(data.get("valid_until"))
    if valid_from is None or valid_until is None:
        errors.append("valid_from and valid_until are required")
    elif valid_from > valid_until:
        errors.append("valid_until must not be earlier than valid_from")
    data["valid_from"] = valid_from
    data["valid_until"] = valid_until

    try:
        data["eligibility_tags"] = [tag.value for tag in parse_tags(data.get("eligibility_tags"))]
    except ValueError:
        errors.append("eligibility_tags contains an unknown tag")

    for key in ("target_user_groups", "applicable_category_ids", "applicable_item_ids"):
        data[key] = sorted({str(item).strip() for item in (data.get(key) or []) if str(item).strip()})

    data["is_unique_per_user"] = bool(data.get("is_unique_per_user", True))
    data["is_active"] = bool(data.get("is_active", True))

    if errors:
        raise InvalidCampaignSpec(errors)
    return data


def _campaign_fields(campaign: Campaign) -> dict[str, Any]:
    return {column.name: getattr(campaign, column.name) for column in Campaign.__table__.columns}


def owner_key(campaign_id: int, user_id: str) -> str:
    return f"{campaign_id}:{user_id}"


class CampaignStore:
    def __init__(self, db: Session, *, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def get_campaign(self, campaign_id: int) -> Campaign:
        campaign = (
            self.db.query(Campaign)
            .filter(Campaign.id == campaign_id)
            .populate_existing()
            .first()
        )
        if not campaign:
            raise CampaignNotFound(campaign_id)
        return campaign

    def get_by_slug_or_id(self, identifier: str) -> Campaign:
        value = str(identifier).strip()
        if value.isdigit():
            return self.get_campaign(int(value))
        campaign = self.db.query(Campaign).filter(Campaign.slug == value.lower()).first()
        if not campaign:
            raise CampaignNotFound(identifier)
        return campaign

    def _unique_slug(self, name: str, *, exclude_id: int | None = None) -> str:
        base_slug = normalize_slug(name) or "campaign"
        slug = base_slug
        counter = 1
        while True:
            query = self.db.query(Campaign.id).filter(Campaign.slug == slug)
            if exclude_id is not None:
                query = query.filter(Campaign.id != exclude_id)
            if not query.first():
                return slug
            slug = f"{base_slug}-{counter}"
            counter += 1

    def _ensure_unique_name(self, name: str, *, exclude_id: int | None = None) -> None:
        query = self.db.query(Campaign.id).filter(func.lower(Campaign.name) == name.lower())
        if exclude_id is not None:
            query = query.filter(Campaign.id != exclude_id)
        if query.first():
            raise InvalidCampaignSpec([f"a campaign named '{name}' already exists"])

    def create_campaign(self, spec: CampaignSpec) -> Campaign:
        data = normalize_campaign_fields(asdict(spec))
        self._ensure_unique_name(data["name"])
        campaign = Campaign(
            **data,
            slug=self._unique_slug(data["name"]),
            global_usage_count=0,
        )
        self.db.add(campaign)
        self.db.flush()
        logger.info(
            "campaign created slug=%s type=%s",
            campaign.slug,
            campaign.discount_type,
            extra={"campaign_id": campaign.id},
        )
        return campaign

    def update_campaign(self, campaign_id: int, changes: Mapping[str, Any]) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        blocked = sorted(set(changes) & IMMUTABLE_FIELDS)
        if blocked:
            raise InvalidCampaignSpec([f"{name} cannot be changed" for name in blocked])
        unknown = sorted(set(changes) - set(Campaign.__table__.columns.keys()))
        if unknown:
            raise InvalidCampaignSpec([f"unknown field {name}" for name in unknown])

        merged = _campaign_fields(campaign)
        merged.update(changes)
        for key in IMMUTABLE_FIELDS:
            merged.pop(key, None)
        data = normalize_campaign_fields(merged, global_usage_count=int(campaign.global_usage_count or 0))

        if data["is_unique_per_user"] != bool(campaign.is_unique_per_user):
            self._sync_owner_keys(campaign.id, unique=data["is_unique_per_user"])
        if data["name"] != campaign.name:
            self._ensure_unique_name(data["name"], exclude_id=campaign.id)
            campaign.slug = self._unique_slug(data["name"], exclude_id=campaign.id)
        for key, value in data.items():
            setattr(campaign, key, value)
        self.db.flush()
        logger.info("campaign updated fields=%s", sorted(changes), extra={"campaign_id": campaign.id})
        return campaign

    def _sync_owner_keys(self, campaign_id: int, *, unique: bool) -> None:
        """Backfill or clear the per-user owner keys when uniqueness is toggled.

        Turning uniqueness on is refused while any user holds several entries.
        """
        if not unique:
            self.db.execute(
                update(CouponLedgerEntry)
                .where(CouponLedgerEntry.campaign_id == campaign_id)
                .values(unique_owner_key=None)
                .execution_options(synchronize_session=False)
            )
            return

        duplicated = (
            self.db.query(CouponLedgerEntry.user_id)
            .filter(CouponLedgerEntry.campaign_id == campaign_id)
            .group_by(CouponLedgerEntry.user_id)
            .having(func.count(CouponLedgerEntry.id) > 1)
            .order_by(CouponLedgerEntry.user_id)
            .all()
        )
        if duplicated:
            users = ", ".join(user_id for (user_id,) in duplicated)
            raise InvalidCampaignSpec(
                [f"is_unique_per_user cannot be enabled while users hold several coupons: {users}"]
            )
        entries = self.db.query(CouponLedgerEntry).filter(CouponLedgerEntry.campaign_id == campaign_id).all()
        for entry in entries:
            entry.unique_owner_key = owner_key(campaign_id, entry.user_id)

    def deactivate_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        campaign.is_active = False
        self.db.flush()
        logger.info("campaign deactivated", extra={"campaign_id": campaign.id})
        return campaign

    def list_campaigns(
        self,
        *,
        is_active: bool | None = None,
        discount_type: str | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Campaign], int]:
        query = self.db.query(Campaign)
        if is_active is not None:
            query = query.filter(Campaign.is_active.is_(is_active))
        if discount_type:
            query = query.filter(Campaign.discount_type == discount_type.upper())
        total = query.count()

        column = SORTABLE_FIELDS.get(sort_by, Campaign.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        items = (
            query.order_by(ordering, Campaign.id.asc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def increment_global_usage(self, campaign_id: int) -> None:
        """Take one global slot; raises LimitExceeded when none is left."""
        stmt = (
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.is_active.is_(True),
                or_(
                    Campaign.max_global_usage.is_(None),
                    Campaign.global_usage_count < Campaign.max_global_usage,
                ),
            )
            .values(global_usage_count=Campaign.global_usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise LimitExceeded(f"campaign {campaign_id} has no global usage left")

    def decrement_global_usage(self, campaign_id: int) -> None:
        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.global_usage_count > 0)
            .values(global_usage_count=Campaign.global_usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise LimitExceeded(f"campaign {campaign_id} global usage is already zero")

    def usage_stats(self, campaign_id: int) -> dict[str, Any]:
        campaign = self.get_campaign(campaign_id)
        now = self.clock()
        current = int(campaign.global_usage_count or 0)
        cap = campaign.max_global_usage

        totals = (
            self.db.query(
                func.count(CouponLedgerEntry.id),
                func.coalesce(func.sum(CouponLedgerEntry.current_usage_count), 0),
            )
            .filter(CouponLedgerEntry.campaign_id == campaign.id)
            .one()
        )
        exhausted = (
            self.db.query(func.count(CouponLedgerEntry.id))
            .filter(
                CouponLedgerEntry.campaign_id == campaign.id,
                CouponLedgerEntry.current_usage_count >= campaign.max_usage_per_user,
            )
            .scalar()
        )
        active = (
            self.db.query(func.count(CouponLedgerEntry.id))
            .filter(CouponLedgerEntry.campaign_id == campaign.id, CouponLedgerEntry.is_active.is_(True))
            .scalar()
        )
        campaign_over = as_utc(campaign.valid_until) < now
        expired_query = self.db.query(func.count(CouponLedgerEntry.id)).filter(
            CouponLedgerEntry.campaign_id == campaign.id
        )
        if not campaign_over:
            expired_query = expired_query.filter(CouponLedgerEntry.expires_at < now)
        expired = expired_query.scalar()

        return {
            "campaign_id": campaign.id,
            "current_usage": current,
            "max_usage": cap,
            "remaining_usage": cap - current if cap is not None else None,
            "usage_percentage": round(current / cap * 100) if cap else 0,
            "total_coupons": int(totals[0] or 0),
            "total_usage": int(totals[1] or 0),
            "exhausted_coupons": int(exhausted or 0),
            "active_coupons": int(active or 0),
            "expired_coupons": int(expired or 0),
        }
