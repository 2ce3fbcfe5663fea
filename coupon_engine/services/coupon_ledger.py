from __future__ import annotations

import enum
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coupon_engine.core.config import COUPON_CODE_MAX_ATTEMPTS, COUPON_CODE_RANDOM_BYTES
from coupon_engine.models.campaign import Campaign
from coupon_engine.models.coupon_ledger import CouponLedgerEntry
from coupon_engine.services.campaign_store import CampaignStore, owner_key
from coupon_engine.services.clock import Clock, as_utc, utcnow
from coupon_engine.services.errors import (
    CodeGenerationFailed,
    CouponNotFound,
    DuplicateIssuance,
    InvalidCampaignSpec,
    LedgerEntryNotFound,
    LimitExceeded,
)

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9-]{4,50}$")
DEFAULT_CODE_PREFIX = "COUPON-"
ENTRY_SORT_FIELDS = {
    "assigned_at": CouponLedgerEntry.assigned_at,
    "expires_at": CouponLedgerEntry.expires_at,
    "last_usage_at": CouponLedgerEntry.last_usage_at,
    "current_usage_count": CouponLedgerEntry.current_usage_count,
    "coupon_code": CouponLedgerEntry.coupon_code,
}
# owner and counters are fixed once issued; usage only moves through increment/decrement
UPDATABLE_ENTRY_FIELDS = {"expires_at", "is_active"}


class CouponState(str, enum.Enum):
    ISSUED_UNUSED = "ISSUED_UNUSED"
    PARTIALLY_USED = "PARTIALLY_USED"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"
    DEACTIVATED = "DEACTIVATED"


TERMINAL_STATES = {CouponState.EXHAUSTED, CouponState.EXPIRED, CouponState.DEACTIVATED}


@dataclass
class IssuanceReport:
    issued: list[CouponLedgerEntry] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)


def normalize_code(coupon_code: str | None) -> str:
    return (coupon_code or "").strip().upper()


def effective_expiry(entry: CouponLedgerEntry, campaign: Campaign) -> datetime:
    """The earlier of the entry's own expiry and the campaign's end governs."""
    return min(as_utc(entry.expires_at), as_utc(campaign.valid_until))


def entry_state(entry: CouponLedgerEntry, campaign: Campaign, now: datetime) -> CouponState:
    if not entry.is_active:
        return CouponState.DEACTIVATED
    if now > effective_expiry(entry, campaign):
        return CouponState.EXPIRED
    used = int(entry.current_usage_count or 0)
    if used >= int(campaign.max_usage_per_user):
        return CouponState.EXHAUSTED
    if used == 0:
        return CouponState.ISSUED_UNUSED
    return CouponState.PARTIALLY_USED


def unique_owner_key(campaign: Campaign, user_id: str) -> str | None:
    if not campaign.is_unique_per_user:
        return None
    return owner_key(campaign.id, user_id)


class CouponLedger:
    def __init__(self, db: Session, *, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock
        self.campaigns = CampaignStore(db, clock=clock)

    def find_entry(self, coupon_code: str) -> CouponLedgerEntry:
        code = normalize_code(coupon_code)
        entry = (
            self.db.query(CouponLedgerEntry)
            .filter(CouponLedgerEntry.coupon_code == code)
            .populate_existing()
            .first()
        )
        if not entry:
            raise CouponNotFound(code)
        return entry

    def get_entry(self, entry_id: int) -> CouponLedgerEntry:
        entry = (
            self.db.query(CouponLedgerEntry)
            .filter(CouponLedgerEntry.id == entry_id)
            .populate_existing()
            .first()
        )
        if not entry:
            raise LedgerEntryNotFound(entry_id)
        return entry

    def _code_taken(self, code: str) -> bool:
        return self.db.query(CouponLedgerEntry.id).filter(CouponLedgerEntry.coupon_code == code).first() is not None

    def generate_code(self, campaign: Campaign) -> str:
        prefix = campaign.code_prefix or DEFAULT_CODE_PREFIX
        for _ in range(COUPON_CODE_MAX_ATTEMPTS):
            code = f"{prefix}{secrets.token_hex(COUPON_CODE_RANDOM_BYTES).upper()}"
            if not self._code_taken(code):
                return code
        raise CodeGenerationFailed("Failed to generate a unique coupon code after multiple attempts")

    def issue(
        self,
        campaign_id: int,
        user_id: str,
        *,
        coupon_code: str | None = None,
        expires_at: datetime | None = None,
    ) -> CouponLedgerEntry:
        campaign = self.campaigns.get_campaign(campaign_id)
        if not campaign.is_active:
            raise InvalidCampaignSpec(["cannot issue coupons for an inactive campaign"])

        user_id = str(user_id).strip()
        owner = unique_owner_key(campaign, user_id)
        if owner and self.db.query(CouponLedgerEntry.id).filter(CouponLedgerEntry.unique_owner_key == owner).first():
            raise DuplicateIssuance(campaign.id, user_id)

        if coupon_code is not None:
            code = normalize_code(coupon_code)
            if not COUPON_CODE_PATTERN.match(code):
                raise InvalidCampaignSpec(["coupon_code must be 4-50 uppercase letters, numbers or hyphens"])
            if self._code_taken(code):
                raise InvalidCampaignSpec([f"coupon_code {code} is already in use"])
        else:
            code = self.generate_code(campaign)

        entry = CouponLedgerEntry(
            campaign_id=campaign.id,
            user_id=user_id,
            coupon_code=code,
            unique_owner_key=owner,
            current_usage_count=0,
            is_active=True,
            expires_at=as_utc(expires_at) or as_utc(campaign.valid_until),
            assigned_at=self.clock(),
        )
        try:
            self.db.add(entry)
            self.db.flush()
        except IntegrityError as exc:
            # lost a race on the unique indexes; pending work in the session is discarded
            self.db.rollback()
            if owner:
                raise DuplicateIssuance(campaign.id, user_id) from exc
            raise InvalidCampaignSpec([f"coupon_code {code} is already in use"]) from exc

        logger.info(
            "coupon issued user=%s",
            user_id,
            extra={"coupon_code": code, "campaign_id": campaign.id},
        )
        return entry

    def issue_many(self, campaign_id: int, user_ids: Iterable[str], *, codes_per_user: int = 1) -> IssuanceReport:
        """Issue coupons to several users, committing each one on its own.

        Per-user failures are collected in the report instead of aborting the batch.
        """
        campaign = self.campaigns.get_campaign(campaign_id)
        if not campaign.is_active:
            raise InvalidCampaignSpec(["cannot issue coupons for an inactive campaign"])
        if campaign.max_global_usage is not None and campaign.global_usage_count >= campaign.max_global_usage:
            raise InvalidCampaignSpec(["campaign has reached its maximum global usage"])

        report = IssuanceReport()
        for user_id in user_ids:
            for _ in range(max(codes_per_user, 1)):
                try:
                    entry = self.issue(campaign.id, user_id)
                    self.db.commit()
                    report.issued.append(entry)
                except (DuplicateIssuance, InvalidCampaignSpec, CodeGenerationFailed) as exc:
                    report.failures.append({"user_id": str(user_id), "error": str(exc)})
                    break
        return report

    def increment_usage(self, entry_id: int) -> None:
        """Compare-and-increment against the campaign's per-user cap.

        Raises LimitExceeded, leaving the row untouched, when the entry is
        inactive or already at its cap.
        """
        per_user_cap = (
            select(Campaign.max_usage_per_user)
            .where(Campaign.id == CouponLedgerEntry.campaign_id)
            .scalar_subquery()
        )
        stmt = (
            update(CouponLedgerEntry)
            .where(
                CouponLedgerEntry.id == entry_id,
                CouponLedgerEntry.is_active.is_(True),
                CouponLedgerEntry.current_usage_count < per_user_cap,
            )
            .values(
                current_usage_count=CouponLedgerEntry.current_usage_count + 1,
                last_usage_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise LimitExceeded(f"ledger entry {entry_id} has no usage left")

    def decrement_usage(self, entry_id: int) -> None:
        stmt = (
            update(CouponLedgerEntry)
            .where(CouponLedgerEntry.id == entry_id, CouponLedgerEntry.current_usage_count > 0)
            .values(current_usage_count=CouponLedgerEntry.current_usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise LimitExceeded(f"ledger entry {entry_id} usage is already zero")

    def deactivate_entry(self, entry_id: int) -> CouponLedgerEntry:
        entry = self.get_entry(entry_id)
        entry.is_active = False
        self.db.flush()
        logger.info("coupon deactivated", extra={"coupon_code": entry.coupon_code, "campaign_id": entry.campaign_id})
        return entry

    def update_entry(self, entry_id: int, changes: Mapping[str, Any]) -> CouponLedgerEntry:
        """Change an issued coupon's expiry or active flag.

        Code, owner, campaign and usage counters are fixed once issued.
        """
        entry = self.get_entry(entry_id)
        rejected = sorted(set(changes) - UPDATABLE_ENTRY_FIELDS)
        if rejected:
            raise InvalidCampaignSpec([f"{name} cannot be changed" for name in rejected])

        errors: list[str] = []
        values: dict[str, Any] = {}
        if "expires_at" in changes:
            expires_at = as_utc(changes["expires_at"])
            if expires_at is None:
                errors.append("expires_at cannot be empty")
            elif expires_at < as_utc(entry.assigned_at):
                errors.append("expires_at must not be earlier than the assignment date")
            values["expires_at"] = expires_at
        if "is_active" in changes:
            if changes["is_active"] is None:
                errors.append("is_active cannot be empty")
            values["is_active"] = bool(changes["is_active"])
        if errors:
            raise InvalidCampaignSpec(errors)

        for key, value in values.items():
            setattr(entry, key, value)
        self.db.flush()
        logger.info(
            "coupon updated fields=%s",
            sorted(changes),
            extra={"coupon_code": entry.coupon_code, "campaign_id": entry.campaign_id},
        )
        return entry

    def list_entries(
        self,
        *,
        user_id: str | None = None,
        campaign_id: int | None = None,
        code_contains: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 50,
        sort_by: str = "assigned_at",
        sort_order: str = "desc",
    ) -> tuple[list[CouponLedgerEntry], int]:
        query = self.db.query(CouponLedgerEntry)
        if user_id:
            query = query.filter(CouponLedgerEntry.user_id == str(user_id))
        if campaign_id is not None:
            query = query.filter(CouponLedgerEntry.campaign_id == campaign_id)
        if code_contains:
            query = query.filter(CouponLedgerEntry.coupon_code.contains(normalize_code(code_contains), autoescape=True))
        if is_active is not None:
            query = query.filter(CouponLedgerEntry.is_active.is_(is_active))
        total = query.count()

        column = ENTRY_SORT_FIELDS.get(sort_by, CouponLedgerEntry.assigned_at)
        if sort_order == "asc":
            ordering = (column.asc(), CouponLedgerEntry.id.asc())
        else:
            ordering = (column.desc(), CouponLedgerEntry.id.desc())
        items = query.order_by(*ordering).offset((max(page, 1) - 1) * limit).limit(limit).all()
        return items, total

    def list_for_campaign(self, campaign_id: int, *, page: int = 1, limit: int = 50) -> tuple[list[CouponLedgerEntry], int]:
        return self.list_entries(campaign_id=campaign_id, page=page, limit=limit)

    def list_for_user(self, user_id: str, *, status: str = "active") -> list[tuple[CouponLedgerEntry, CouponState]]:
        now = self.clock()
        rows = (
            self.db.query(CouponLedgerEntry)
            .filter(CouponLedgerEntry.user_id == str(user_id))
            .order_by(CouponLedgerEntry.assigned_at.desc(), CouponLedgerEntry.id.desc())
            .all()
        )
        wanted = {
            "active": set(CouponState) - TERMINAL_STATES,
            "expired": {CouponState.EXPIRED},
            "exhausted": {CouponState.EXHAUSTED},
            "deactivated": {CouponState.DEACTIVATED},
        }.get(status)

        result = []
        for entry in rows:
            state = entry_state(entry, entry.campaign, now)
            if wanted is None or state in wanted:
                result.append((entry, state))
        return result
