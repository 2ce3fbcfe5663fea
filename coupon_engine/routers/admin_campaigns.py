from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from coupon_engine.core.database import get_db
from coupon_engine.deps import require_admin_token
from coupon_engine.models.campaign import Campaign
from coupon_engine.models.coupon_ledger import CouponLedgerEntry
from coupon_engine.schemas.coupons import (
    CampaignCreate,
    CampaignListResponse,
    CampaignRead,
    CampaignUpdate,
    GenerateCodesRequest,
    GenerateCodesResponse,
    LedgerEntryListResponse,
    LedgerEntryRead,
    LedgerEntryUpdate,
    UsageStatsResponse,
)
from coupon_engine.services.admin_audit import log_admin_action
from coupon_engine.services.campaign_store import CampaignSpec, CampaignStore
from coupon_engine.services.coupon_ledger import CouponLedger, entry_state
from coupon_engine.services.errors import (
    CampaignNotFound,
    CodeGenerationFailed,
    DuplicateIssuance,
    InvalidCampaignSpec,
    LedgerEntryNotFound,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/coupon-campaigns", tags=["admin-coupon-campaigns"])
coupons_router = APIRouter(prefix="/api/admin/coupons", tags=["admin-coupons"])


def _invalid(exc: InvalidCampaignSpec) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors)


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _entry_read(entry: CouponLedgerEntry, ledger: CouponLedger) -> LedgerEntryRead:
    read = LedgerEntryRead.model_validate(entry)
    read.state = entry_state(entry, entry.campaign, ledger.clock()).value
    return read


def _load_campaign(store: CampaignStore, campaign_id: int) -> Campaign:
    try:
        return store.get_campaign(campaign_id)
    except CampaignNotFound as exc:
        raise _not_found(exc)


@router.post("", response_model=CampaignRead, status_code=201)
def create_campaign(
    payload: CampaignCreate,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    store = CampaignStore(db)
    try:
        campaign = store.create_campaign(CampaignSpec(**payload.model_dump()))
    except InvalidCampaignSpec as exc:
        db.rollback()
        raise _invalid(exc)

    log_admin_action(
        db,
        actor=actor,
        action="campaign_create",
        entity_type="coupon_campaign",
        entity_id=campaign.id,
        meta={"name": campaign.name, "slug": campaign.slug},
    )
    db.commit()
    db.refresh(campaign)
    return campaign


@router.get("", response_model=CampaignListResponse)
def list_campaigns(
    is_active: Optional[bool] = None,
    discount_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    items, total = CampaignStore(db).list_campaigns(
        is_active=is_active,
        discount_type=discount_type,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return CampaignListResponse(
        items=[CampaignRead.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{identifier}", response_model=CampaignRead)
def get_campaign(
    identifier: str,
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    try:
        return CampaignStore(db).get_by_slug_or_id(identifier)
    except CampaignNotFound as exc:
        raise _not_found(exc)


@router.patch("/{campaign_id}", response_model=CampaignRead)
def update_campaign(
    campaign_id: int,
    payload: CampaignUpdate,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    store = CampaignStore(db)
    try:
        campaign = store.update_campaign(campaign_id, changes)
    except CampaignNotFound as exc:
        raise _not_found(exc)
    except InvalidCampaignSpec as exc:
        db.rollback()
        raise _invalid(exc)

    log_admin_action(
        db,
        actor=actor,
        action="campaign_update",
        entity_type="coupon_campaign",
        entity_id=campaign.id,
        meta={"fields": sorted(changes)},
    )
    db.commit()
    db.refresh(campaign)
    return campaign


@router.delete("/{campaign_id}", response_model=CampaignRead)
def deactivate_campaign(
    campaign_id: int,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    store = CampaignStore(db)
    try:
        campaign = store.deactivate_campaign(campaign_id)
    except CampaignNotFound as exc:
        raise _not_found(exc)

    log_admin_action(
        db,
        actor=actor,
        action="campaign_deactivate",
        entity_type="coupon_campaign",
        entity_id=campaign.id,
    )
    db.commit()
    db.refresh(campaign)
    return campaign


@router.post("/{campaign_id}/generate-codes", response_model=GenerateCodesResponse, status_code=201)
def generate_codes(
    campaign_id: int,
    payload: GenerateCodesRequest,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CouponLedger(db)
    _load_campaign(ledger.campaigns, campaign_id)
    try:
        report = ledger.issue_many(campaign_id, payload.user_ids, codes_per_user=payload.codes_per_user)
    except InvalidCampaignSpec as exc:
        db.rollback()
        raise _invalid(exc)

    log_admin_action(
        db,
        actor=actor,
        action="coupon_codes_generate",
        entity_type="coupon_campaign",
        entity_id=campaign_id,
        meta={"issued": len(report.issued), "failed": len(report.failures)},
    )
    db.commit()
    return GenerateCodesResponse(
        issued=[_entry_read(entry, ledger) for entry in report.issued],
        failures=report.failures,
    )


@router.get("/{campaign_id}/usage-stats", response_model=UsageStatsResponse)
def usage_stats(
    campaign_id: int,
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    try:
        return CampaignStore(db).usage_stats(campaign_id)
    except CampaignNotFound as exc:
        raise _not_found(exc)


@router.get("/{campaign_id}/coupons", response_model=LedgerEntryListResponse)
def list_campaign_coupons(
    campaign_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CouponLedger(db)
    _load_campaign(ledger.campaigns, campaign_id)
    items, total = ledger.list_for_campaign(campaign_id, page=page, limit=limit)
    return LedgerEntryListResponse(
        items=[_entry_read(entry, ledger) for entry in items],
        total=total,
        page=page,
        limit=limit,
    )


@coupons_router.post("/issue", response_model=LedgerEntryRead, status_code=201)
def issue_coupon(
    campaign_id: int = Query(...),
    user_id: str = Query(..., min_length=1, max_length=64),
    coupon_code: Optional[str] = Query(None),
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CouponLedger(db)
    try:
        entry = ledger.issue(campaign_id, user_id, coupon_code=coupon_code)
    except CampaignNotFound as exc:
        raise _not_found(exc)
    except DuplicateIssuance as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except CodeGenerationFailed as exc:
        logger.error("coupon code generation exhausted campaign_id=%s", campaign_id)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except InvalidCampaignSpec as exc:
        db.rollback()
        raise _invalid(exc)

    log_admin_action(
        db,
        actor=actor,
        action="coupon_issue",
        entity_type="coupon_ledger_entry",
        entity_id=entry.id,
        meta={"campaign_id": campaign_id, "user_id": user_id, "coupon_code": entry.coupon_code},
    )
    db.commit()
    db.refresh(entry)
    return _entry_read(entry, ledger)


@coupons_router.patch("/{entry_id}/deactivate", response_model=LedgerEntryRead)
def deactivate_coupon(
    entry_id: int,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CouponLedger(db)
    try:
        entry = ledger.deactivate_entry(entry_id)
    except LedgerEntryNotFound as exc:
        raise _not_found(exc)

    log_admin_action(
        db,
        actor=actor,
        action="coupon_deactivate",
        entity_type="coupon_ledger_entry",
        entity_id=entry.id,
        meta={"coupon_code": entry.coupon_code},
    )
    db.commit()
    db.refresh(entry)
    return _entry_read(entry, ledger)


@coupons_router.get("", response_model=LedgerEntryListResponse)
def list_coupons(
    user_id: Optional[str] = Query(None, max_length=64),
    campaign_id: Optional[int] = None,
    coupon_code: Optional[str] = Query(None, max_length=50),
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = Query("assigned_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CouponLedger(db)
    items, total = ledger.list_entries(
        user_id=user_id,
        campaign_id=campaign_id,
        code_contains=coupon_code,
        is_active=is_active,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return LedgerEntryListResponse(
        items=[_entry_read(entry, ledger) for entry in items],
        total=total,
        page=page,
        limit=limit,
    )


@coupons_router.patch("/{entry_id}", response_model=LedgerEntryRead)
def update_coupon(
    entry_id: int,
    payload: LedgerEntryUpdate,
    actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    ledger = CouponLedger(db)
    try:
        entry = ledger.update_entry(entry_id, changes)
    except LedgerEntryNotFound as exc:
        raise _not_found(exc)
    except InvalidCampaignSpec as exc:
        db.rollback()
        raise _invalid(exc)

    log_admin_action(
        db,
        actor=actor,
        action="coupon_update",
        entity_type="coupon_ledger_entry",
        entity_id=entry.id,
        meta={"coupon_code": entry.coupon_code, "fields": sorted(changes)},
    )
    db.commit()
    db.refresh(entry)
    return _entry_read(entry, ledger)
