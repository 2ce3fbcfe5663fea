from __future__ import annotations

from fastapi import APIRouter, Depends

from coupon_engine.core.metrics import redemption_metrics, request_metrics
from coupon_engine.deps import require_admin_token
from coupon_engine.schemas.coupons import MetricsResponse

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("", response_model=MetricsResponse)
def service_metrics(_actor: str = Depends(require_admin_token)):
    return {"requests": request_metrics.snapshot(), "redemptions": redemption_metrics.snapshot()}
