from __future__ import annotations

from coupon_engine.services.event_bus import event_bus


def emit_redemption_attempted(
    *,
    operation: str,
    outcome: str,
    coupon_code: str,
    user_id: str,
    campaign_id: int | None = None,
    replayed: bool = False,
) -> None:
    event_bus.emit(
        "coupon.redemption.attempted",
        {
            "operation": operation,
            "outcome": outcome,
            "coupon_code": coupon_code,
            "user_id": user_id,
            "campaign_id": campaign_id,
            "replayed": replayed,
        },
    )


def emit_usage_compensated(*, coupon_code: str, entry_id: int, campaign_id: int) -> None:
    event_bus.emit(
        "coupon.usage.compensated",
        {"coupon_code": coupon_code, "entry_id": entry_id, "campaign_id": campaign_id},
    )
