from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from coupon_engine.core import config
from coupon_engine.core.database import get_db
from coupon_engine.services.campaign_store import CampaignStore
from coupon_engine.services.coupon_ledger import CouponLedger
from coupon_engine.services.redemption import RedemptionEngine

logger = logging.getLogger(__name__)

ADMIN_ACTOR = "admin-token"


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> str:
    """Gate the admin routes behind the shared ``X-Admin-Token`` header.

    Outside production an unset ``ADMIN_API_TOKEN`` leaves the routes open.
    """
    configured = (config.ADMIN_API_TOKEN or "").strip()
    incoming = (x_admin_token or "").strip()
    if not configured:
        if config.IS_PROD:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin API requires ADMIN_API_TOKEN in production",
            )
        return ADMIN_ACTOR
    if incoming != configured:
        logger.warning(
            "Access denied (invalid_admin_token) endpoint=%s %s",
            request.method,
            request.url.path,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
    return ADMIN_ACTOR


def get_campaign_store(db: Session = Depends(get_db)) -> CampaignStore:
    return CampaignStore(db)


def get_coupon_ledger(db: Session = Depends(get_db)) -> CouponLedger:
    return CouponLedger(db)


def get_redemption_engine(db: Session = Depends(get_db)) -> RedemptionEngine:
    return RedemptionEngine(db, commit_mode=config.REDEMPTION_COMMIT_MODE)
