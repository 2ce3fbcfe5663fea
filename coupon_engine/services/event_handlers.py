from __future__ import annotations

import logging

from coupon_engine.core.metrics import redemption_metrics
from coupon_engine.services.event_bus import event_bus

logger = logging.getLogger(__name__)


def handle_redemption_attempted(payload: dict) -> None:
    outcome = payload["outcome"]
    if payload.get("replayed"):
        outcome = f"{outcome}_replayed"
    redemption_metrics.observe(operation=payload["operation"], outcome=outcome)
    logger.info(
        "coupon %s %s",
        payload["operation"],
        outcome,
        extra={
            "coupon_code": payload.get("coupon_code"),
            "campaign_id": payload.get("campaign_id"),
            "user_id": payload.get("user_id"),
            "outcome": outcome,
        },
    )


def handle_usage_compensated(payload: dict) -> None:
    redemption_metrics.observe_compensation()
    logger.warning(
        "ledger usage compensated entry_id=%s",
        payload.get("entry_id"),
        extra={"coupon_code": payload.get("coupon_code"), "campaign_id": payload.get("campaign_id")},
    )


event_bus.subscribe("coupon.redemption.attempted", handle_redemption_attempted)
event_bus.subscribe("coupon.usage.compensated", handle_usage_compensated)
