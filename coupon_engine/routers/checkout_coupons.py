from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from coupon_engine.core.request_context import set_request_context
from coupon_engine.deps import get_coupon_ledger, get_redemption_engine
from coupon_engine.schemas.coupons import (
    CampaignSummary,
    RedemptionRequest,
    RedemptionResponse,
    UserCouponRead,
)
from coupon_engine.services.coupon_ledger import CouponLedger, entry_state
from coupon_engine.services.eligibility import UserProfile, build_profile
from coupon_engine.services.errors import CouponNotFound, StoreUnavailable
from coupon_engine.services.redemption import CartItem, CartSnapshot, RedemptionEngine, RedemptionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coupons", tags=["coupons"])

USER_COUPON_STATUSES = {"active", "expired", "exhausted", "deactivated", "all"}


def _cart_from_payload(payload: RedemptionRequest) -> CartSnapshot:
    return CartSnapshot.build(
        payload.cart_subtotal,
        [
            CartItem(
                item_id=item.item_id,
                category_id=item.category_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in payload.items
        ],
    )


def _profile_from_payload(payload: RedemptionRequest) -> UserProfile:
    try:
        return build_profile(
            payload.profile.flags,
            payload.profile.prior_order_count,
            payload.profile.user_groups,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown profile flag: {exc}")


def _to_response(result: RedemptionResult) -> RedemptionResponse:
    return RedemptionResponse(
        success=result.success,
        coupon_code=result.coupon_code,
        failure=result.failure.value if result.failure else None,
        message=result.message,
        campaign_id=result.campaign_id,
        entry_id=result.entry_id,
        discount_amount=result.discount_amount,
        free_shipping=result.free_shipping,
        discounted_subtotal=result.discounted_subtotal,
        current_usage_count=result.current_usage_count,
        global_usage_count=result.global_usage_count,
        remaining_user_uses=result.remaining_user_uses,
        applicable_items=result.applicable_items,
        committed=result.committed,
        replayed=result.replayed,
    )


def _store_unavailable(exc: StoreUnavailable) -> HTTPException:
    logger.error("coupon store unavailable: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Coupon service is temporarily unavailable",
    )


@router.post("/preview", response_model=RedemptionResponse)
def preview_coupon(
    payload: RedemptionRequest,
    engine: RedemptionEngine = Depends(get_redemption_engine),
):
    set_request_context(user_id=payload.user_id)
    cart = _cart_from_payload(payload)
    profile = _profile_from_payload(payload)
    try:
        result = engine.preview_discount(payload.coupon_code, payload.user_id, cart, profile)
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return _to_response(result)


@router.post("/apply", response_model=RedemptionResponse)
def apply_coupon(
    payload: RedemptionRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    engine: RedemptionEngine = Depends(get_redemption_engine),
):
    key = payload.idempotency_key or idempotency_key
    set_request_context(user_id=payload.user_id, idempotency_key=key)
    cart = _cart_from_payload(payload)
    profile = _profile_from_payload(payload)
    try:
        result = engine.apply_coupon(
            payload.coupon_code,
            payload.user_id,
            cart,
            profile,
            idempotency_key=key,
        )
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return _to_response(result)


def _user_coupon(entry, state) -> UserCouponRead:
    campaign = entry.campaign
    return UserCouponRead(
        coupon_code=entry.coupon_code,
        state=state.value,
        current_usage_count=int(entry.current_usage_count or 0),
        remaining_uses=max(int(campaign.max_usage_per_user) - int(entry.current_usage_count or 0), 0),
        expires_at=entry.expires_at,
        campaign=CampaignSummary.model_validate(campaign),
    )


@router.get("/mine", response_model=List[UserCouponRead])
def list_my_coupons(
    user_id: str = Query(..., min_length=1, max_length=64),
    coupon_status: str = Query("active", alias="status"),
    ledger: CouponLedger = Depends(get_coupon_ledger),
):
    if coupon_status not in USER_COUPON_STATUSES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid status filter")
    set_request_context(user_id=user_id)
    rows = ledger.list_for_user(user_id, status=coupon_status)
    return [_user_coupon(entry, state) for entry, state in rows]


@router.get("/{coupon_code}", response_model=UserCouponRead)
def get_my_coupon(
    coupon_code: str,
    user_id: str = Query(..., min_length=1, max_length=64),
    ledger: CouponLedger = Depends(get_coupon_ledger),
):
    set_request_context(user_id=user_id)
    try:
        entry = ledger.find_entry(coupon_code)
    except CouponNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    if entry.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    state = entry_state(entry, entry.campaign, ledger.clock())
    return _user_coupon(entry, state)
