"""Coupon redemption: validation, discount pricing and usage accounting.

``preview_discount`` runs the read-only validation pipeline and prices the
cart. ``apply_coupon`` runs the same pipeline and then commits one unit of
usage on both the ledger entry and its campaign. The commit is the only
write; its conditional updates are what keep the per-user and global caps
intact when checkouts race each other.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from coupon_engine.core.config import (
    COMPENSATION_BASE_DELAY_SECONDS,
    COMPENSATION_MAX_ATTEMPTS,
    COMPENSATION_MAX_DELAY_SECONDS,
    REDEMPTION_COMMIT_MODE,
)
from coupon_engine.models.campaign import Campaign
from coupon_engine.models.coupon_ledger import CouponLedgerEntry
from coupon_engine.models.coupon_redemption import CouponRedemption
from coupon_engine.services.campaign_store import CampaignStore
from coupon_engine.services.clock import Clock, as_utc, utcnow
from coupon_engine.services.coupon_events import emit_redemption_attempted, emit_usage_compensated
from coupon_engine.services.coupon_ledger import CouponLedger, effective_expiry, normalize_code
from coupon_engine.services.discounts import ZERO, DiscountOutcome, compute_discount, round_money, to_decimal
from coupon_engine.services.eligibility import UserProfile, is_user_eligible
from coupon_engine.services.errors import (
    FAILURE_MESSAGES,
    CouponNotFound,
    LimitExceeded,
    RedemptionFailure,
    StoreUnavailable,
)
from coupon_engine.services.retry_backoff import ExponentialBackoff, retry_with_backoff

logger = logging.getLogger(__name__)

COMMIT_TRANSACTIONAL = "transactional"
COMMIT_SAGA = "saga"


@dataclass(frozen=True)
class CartItem:
    item_id: str
    category_id: Optional[str] = None
    quantity: int = 1
    unit_price: Decimal = ZERO


@dataclass(frozen=True)
class CartSnapshot:
    subtotal: Decimal
    items: tuple[CartItem, ...] = ()

    @classmethod
    def build(cls, subtotal: object, items: Iterable[CartItem] = ()) -> "CartSnapshot":
        return cls(subtotal=to_decimal(subtotal), items=tuple(items))


@dataclass
class RedemptionResult:
    success: bool
    coupon_code: str
    failure: Optional[RedemptionFailure] = None
    message: str = ""
    campaign_id: Optional[int] = None
    entry_id: Optional[int] = None
    discount_amount: Decimal = ZERO
    free_shipping: bool = False
    discounted_subtotal: Optional[Decimal] = None
    current_usage_count: Optional[int] = None
    global_usage_count: Optional[int] = None
    remaining_user_uses: Optional[int] = None
    applicable_items: Optional[int] = None
    committed: bool = False
    replayed: bool = False

    @classmethod
    def rejected(cls, failure: RedemptionFailure, coupon_code: str, **kwargs) -> "RedemptionResult":
        return cls(success=False, coupon_code=coupon_code, failure=failure, message=FAILURE_MESSAGES[failure], **kwargs)


class _Rejected(Exception):
    def __init__(self, failure: RedemptionFailure, *, entry: CouponLedgerEntry | None = None) -> None:
        super().__init__(failure.value)
        self.failure = failure
        self.entry = entry


@dataclass
class _Validated:
    entry: CouponLedgerEntry
    campaign: Campaign
    cart: CartSnapshot
    discount: DiscountOutcome = field(default_factory=lambda: DiscountOutcome(ZERO, False))
    applicable_items: int = 0


@dataclass(frozen=True)
class ItemScope:
    restricted: bool
    matching: tuple[CartItem, ...] = ()

    @property
    def matching_amount(self) -> Decimal:
        return sum((to_decimal(item.unit_price) * item.quantity for item in self.matching), ZERO)


def item_scope(campaign: Campaign, cart: CartSnapshot) -> ItemScope:
    categories = {str(value) for value in (campaign.applicable_category_ids or [])}
    items = {str(value) for value in (campaign.applicable_item_ids or [])}
    if not categories and not items:
        return ItemScope(restricted=False, matching=cart.items)
    matching = tuple(
        item
        for item in cart.items
        if str(item.item_id) in items or (item.category_id is not None and str(item.category_id) in categories)
    )
    return ItemScope(restricted=True, matching=matching)


def discount_base(scope: ItemScope, subtotal: Decimal) -> Decimal:
    """Restricted campaigns discount only the matching items; unpriced items fall back to the subtotal."""
    if not scope.restricted:
        return subtotal
    amount = scope.matching_amount
    if amount <= ZERO:
        return subtotal
    return min(amount, subtotal)


class RedemptionEngine:
    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utcnow,
        commit_mode: str = REDEMPTION_COMMIT_MODE,
        backoff: ExponentialBackoff | None = None,
        max_compensation_attempts: int = COMPENSATION_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if commit_mode not in {COMMIT_TRANSACTIONAL, COMMIT_SAGA}:
            raise ValueError(f"unknown commit mode: {commit_mode}")
        self.db = db
        self.clock = clock
        self.commit_mode = commit_mode
        self.campaigns = CampaignStore(db, clock=clock)
        self.ledger = CouponLedger(db, clock=clock)
        self.backoff = backoff or ExponentialBackoff(
            base_delay_seconds=COMPENSATION_BASE_DELAY_SECONDS,
            max_delay_seconds=COMPENSATION_MAX_DELAY_SECONDS,
        )
        self.max_compensation_attempts = max_compensation_attempts
        self.sleep = sleep

    # public API

    def preview_discount(
        self,
        coupon_code: str,
        user_id: str,
        cart: CartSnapshot,
        profile: UserProfile | None = None,
    ) -> RedemptionResult:
        code = normalize_code(coupon_code)
        try:
            validated = self._validate(code, str(user_id), cart, profile or UserProfile())
            result = self._priced(code, validated, committed=False)
        except _Rejected as rejection:
            result = self._rejected(rejection, code)
        except OperationalError as exc:
            self.db.rollback()
            raise StoreUnavailable("coupon store unavailable") from exc
        self._publish("preview", result, str(user_id))
        return result

    def apply_coupon(
        self,
        coupon_code: str,
        user_id: str,
        cart: CartSnapshot,
        profile: UserProfile | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        code = normalize_code(coupon_code)
        user_id = str(user_id)
        try:
            replay = self._replay_for(code, user_id, idempotency_key)
            if replay is not None:
                result = replay
            else:
                validated = self._validate(code, user_id, cart, profile or UserProfile())
                if self.commit_mode == COMMIT_SAGA:
                    result = self._commit_saga(validated, user_id, idempotency_key)
                else:
                    result = self._commit_transactional(validated, user_id, idempotency_key)
        except _Rejected as rejection:
            result = self._rejected(rejection, code)
        except OperationalError as exc:
            self.db.rollback()
            raise StoreUnavailable("coupon store unavailable") from exc
        self._publish("apply", result, user_id)
        return result

    # validation, steps 1-9

    def _resolve_entry(self, code: str, user_id: str) -> CouponLedgerEntry:
        try:
            entry = self.ledger.find_entry(code)
        except CouponNotFound:
            raise _Rejected(RedemptionFailure.COUPON_NOT_FOUND)
        if entry.user_id != user_id:
            raise _Rejected(RedemptionFailure.COUPON_NOT_FOUND)
        return entry

    def _validate(self, code: str, user_id: str, cart: CartSnapshot, profile: UserProfile) -> _Validated:
        entry = self._resolve_entry(code, user_id)
        campaign = self.campaigns.get_campaign(entry.campaign_id)
        now = self.clock()

        if (
            not entry.is_active
            or now > effective_expiry(entry, campaign)
            or now < as_utc(campaign.valid_from)
        ):
            raise _Rejected(RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE, entry=entry)
        if not campaign.is_active:
            raise _Rejected(RedemptionFailure.CAMPAIGN_INACTIVE, entry=entry)

        subtotal = to_decimal(cart.subtotal)
        if campaign.min_purchase_amount is not None and subtotal < to_decimal(campaign.min_purchase_amount):
            raise _Rejected(RedemptionFailure.BELOW_MINIMUM_PURCHASE, entry=entry)
        scope = item_scope(campaign, cart)
        if scope.restricted and not scope.matching:
            raise _Rejected(RedemptionFailure.ITEMS_NOT_ELIGIBLE, entry=entry)
        if not is_user_eligible(campaign.eligibility_tags or [], profile, campaign.target_user_groups):
            raise _Rejected(RedemptionFailure.USER_NOT_ELIGIBLE, entry=entry)

        if int(entry.current_usage_count or 0) >= int(campaign.max_usage_per_user):
            raise _Rejected(RedemptionFailure.PER_USER_LIMIT_REACHED, entry=entry)
        if campaign.max_global_usage is not None and int(campaign.global_usage_count or 0) >= int(
            campaign.max_global_usage
        ):
            raise _Rejected(RedemptionFailure.GLOBAL_LIMIT_REACHED, entry=entry)

        discount = compute_discount(
            discount_type=campaign.discount_type,
            discount_value=campaign.discount_value,
            cart_subtotal=discount_base(scope, subtotal),
            max_discount_cap=campaign.max_discount_cap,
        )
        if discount.amount > subtotal:
            discount = DiscountOutcome(round_money(subtotal), discount.free_shipping)
        return _Validated(
            entry=entry,
            campaign=campaign,
            cart=cart,
            discount=discount,
            applicable_items=len(scope.matching),
        )

    # commit, step 10

    def _commit_transactional(
        self, validated: _Validated, user_id: str, idempotency_key: str | None
    ) -> RedemptionResult:
        entry, campaign = validated.entry, validated.campaign
        try:
            self.ledger.increment_usage(entry.id)
            self.campaigns.increment_global_usage(campaign.id)
        except LimitExceeded:
            self.db.rollback()
            logger.warning(
                "redemption lost the race at commit",
                extra={"coupon_code": entry.coupon_code, "campaign_id": campaign.id},
            )
            replay = self._replay_if_committed(entry, idempotency_key)
            if replay is not None:
                return replay
            raise _Rejected(RedemptionFailure.CONCURRENT_LIMIT_EXCEEDED, entry=entry)

        try:
            redemption = self._record(validated, user_id, idempotency_key)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._replay_after_conflict(entry.coupon_code, user_id, idempotency_key)
        return self._committed(validated, redemption)

    def _commit_saga(self, validated: _Validated, user_id: str, idempotency_key: str | None) -> RedemptionResult:
        entry, campaign = validated.entry, validated.campaign
        try:
            self.ledger.increment_usage(entry.id)
            self.db.commit()
        except LimitExceeded:
            self.db.rollback()
            replay = self._replay_if_committed(entry, idempotency_key)
            if replay is not None:
                return replay
            raise _Rejected(RedemptionFailure.CONCURRENT_LIMIT_EXCEEDED, entry=entry)

        try:
            self.campaigns.increment_global_usage(campaign.id)
            redemption = self._record(validated, user_id, idempotency_key)
            self.db.commit()
        except LimitExceeded:
            self.db.rollback()
            self._compensate(entry.id, entry.coupon_code, campaign.id)
            replay = self._replay_if_committed(entry, idempotency_key)
            if replay is not None:
                return replay
            raise _Rejected(RedemptionFailure.GLOBAL_LIMIT_REACHED, entry=entry)
        except IntegrityError:
            self.db.rollback()
            self._compensate(entry.id, entry.coupon_code, campaign.id)
            return self._replay_after_conflict(entry.coupon_code, user_id, idempotency_key)
        except OperationalError:
            self.db.rollback()
            self._compensate(entry.id, entry.coupon_code, campaign.id)
            raise
        return self._committed(validated, redemption)

    def _compensate(self, entry_id: int, coupon_code: str, campaign_id: int) -> None:
        def attempt() -> None:
            try:
                self.ledger.decrement_usage(entry_id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        try:
            retry_with_backoff(
                attempt,
                backoff=self.backoff,
                max_attempts=self.max_compensation_attempts,
                label=f"ledger compensation entry_id={entry_id}",
                sleep=self.sleep,
            )
        except LimitExceeded:
            logger.error(
                "ledger compensation found nothing to undo entry_id=%s",
                entry_id,
                extra={"coupon_code": coupon_code, "campaign_id": campaign_id},
            )
            return
        emit_usage_compensated(coupon_code=coupon_code, entry_id=entry_id, campaign_id=campaign_id)

    def _record(self, validated: _Validated, user_id: str, idempotency_key: str | None) -> CouponRedemption:
        entry, campaign = validated.entry, validated.campaign
        usage_after = (
            self.db.query(CouponLedgerEntry.current_usage_count).filter(CouponLedgerEntry.id == entry.id).scalar()
        )
        global_after = self.db.query(Campaign.global_usage_count).filter(Campaign.id == campaign.id).scalar()
        redemption = CouponRedemption(
            ledger_entry_id=entry.id,
            campaign_id=campaign.id,
            user_id=user_id,
            idempotency_key=idempotency_key,
            cart_subtotal=round_money(to_decimal(validated.cart.subtotal)),
            discount_amount=validated.discount.amount,
            free_shipping=validated.discount.free_shipping,
            usage_count_after=int(usage_after),
            global_usage_after=int(global_after),
        )
        self.db.add(redemption)
        self.db.flush()
        return redemption

    # idempotent replay

    def _find_redemption(self, entry_id: int, idempotency_key: str) -> CouponRedemption | None:
        return (
            self.db.query(CouponRedemption)
            .filter(
                CouponRedemption.ledger_entry_id == entry_id,
                CouponRedemption.idempotency_key == idempotency_key,
            )
            .populate_existing()
            .first()
        )

    def _replay_for(self, code: str, user_id: str, idempotency_key: str | None) -> RedemptionResult | None:
        if not idempotency_key:
            return None
        entry = self._resolve_entry(code, user_id)
        return self._replay_if_committed(entry, idempotency_key)

    def _replay_if_committed(self, entry: CouponLedgerEntry, idempotency_key: str | None) -> RedemptionResult | None:
        """A retry that lost the race to its own first attempt reports that attempt's result."""
        if not idempotency_key:
            return None
        redemption = self._find_redemption(entry.id, idempotency_key)
        if redemption is None:
            return None
        return self._replayed(entry, redemption)

    def _replay_after_conflict(self, code: str, user_id: str, idempotency_key: str | None) -> RedemptionResult:
        entry = self._resolve_entry(code, user_id)
        redemption = self._find_redemption(entry.id, idempotency_key) if idempotency_key else None
        if redemption is None:
            raise RuntimeError(f"redemption conflict without a stored redemption for {code}")
        return self._replayed(entry, redemption)

    # result builders

    def _priced(self, code: str, validated: _Validated, *, committed: bool) -> RedemptionResult:
        entry, campaign, discount = validated.entry, validated.campaign, validated.discount
        used = int(entry.current_usage_count or 0)
        return RedemptionResult(
            success=True,
            coupon_code=code,
            message="Coupon applied successfully" if committed else "Coupon is valid",
            campaign_id=campaign.id,
            entry_id=entry.id,
            discount_amount=discount.amount,
            free_shipping=discount.free_shipping,
            discounted_subtotal=round_money(to_decimal(validated.cart.subtotal) - discount.amount),
            current_usage_count=used,
            global_usage_count=int(campaign.global_usage_count or 0),
            remaining_user_uses=max(int(campaign.max_usage_per_user) - used, 0),
            applicable_items=validated.applicable_items,
            committed=committed,
        )

    def _committed(self, validated: _Validated, redemption: CouponRedemption) -> RedemptionResult:
        entry, campaign = validated.entry, validated.campaign
        logger.info(
            "coupon redeemed discount=%s usage=%s global_usage=%s",
            redemption.discount_amount,
            redemption.usage_count_after,
            redemption.global_usage_after,
            extra={"coupon_code": entry.coupon_code, "campaign_id": campaign.id},
        )
        return RedemptionResult(
            success=True,
            coupon_code=entry.coupon_code,
            message="Coupon applied successfully",
            campaign_id=campaign.id,
            entry_id=entry.id,
            discount_amount=to_decimal(redemption.discount_amount),
            free_shipping=bool(redemption.free_shipping),
            discounted_subtotal=round_money(to_decimal(redemption.cart_subtotal) - to_decimal(redemption.discount_amount)),
            current_usage_count=redemption.usage_count_after,
            global_usage_count=redemption.global_usage_after,
            remaining_user_uses=max(int(campaign.max_usage_per_user) - redemption.usage_count_after, 0),
            applicable_items=validated.applicable_items,
            committed=True,
        )

    def _replayed(self, entry: CouponLedgerEntry, redemption: CouponRedemption) -> RedemptionResult:
        campaign = self.campaigns.get_campaign(entry.campaign_id)
        return RedemptionResult(
            success=True,
            coupon_code=entry.coupon_code,
            message="Coupon already applied to this checkout",
            campaign_id=campaign.id,
            entry_id=entry.id,
            discount_amount=to_decimal(redemption.discount_amount),
            free_shipping=bool(redemption.free_shipping),
            discounted_subtotal=round_money(to_decimal(redemption.cart_subtotal) - to_decimal(redemption.discount_amount)),
            current_usage_count=redemption.usage_count_after,
            global_usage_count=redemption.global_usage_after,
            remaining_user_uses=max(int(campaign.max_usage_per_user) - redemption.usage_count_after, 0),
            committed=True,
            replayed=True,
        )

    def _rejected(self, rejection: _Rejected, code: str) -> RedemptionResult:
        entry = rejection.entry
        if entry is None:
            return RedemptionResult.rejected(rejection.failure, code)
        return RedemptionResult.rejected(
            rejection.failure,
            code,
            campaign_id=entry.campaign_id,
            entry_id=entry.id,
        )

    def _publish(self, operation: str, result: RedemptionResult, user_id: str) -> None:
        emit_redemption_attempted(
            operation=operation,
            outcome="success" if result.success else result.failure.value,
            coupon_code=result.coupon_code,
            user_id=user_id,
            campaign_id=result.campaign_id,
            replayed=result.replayed,
        )
