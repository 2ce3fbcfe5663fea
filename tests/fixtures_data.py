"""Reusable data for the coupon engine test scenarios."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

SUMMER25 = {
    "name": "SUMMER25",
    "code_prefix": "SUMMER25-",
    "discount_type": "PERCENTAGE",
    "discount_value": Decimal("25"),
    "min_purchase_amount": Decimal("100"),
    "max_usage_per_user": 2,
    "max_global_usage": 500,
    "valid_from": NOW - timedelta(days=10),
    "valid_until": NOW + timedelta(days=80),
}

VIP50 = {
    "name": "VIP50",
    "code_prefix": "VIP50-",
    "discount_type": "FIXED_AMOUNT",
    "discount_value": Decimal("50"),
    "min_purchase_amount": Decimal("200"),
    "max_usage_per_user": 1,
    "valid_from": NOW - timedelta(days=1),
    "valid_until": NOW + timedelta(days=30),
}

CAPPED_PERCENTAGE = {
    "name": "Twenty Off Capped",
    "discount_type": "PERCENTAGE",
    "discount_value": Decimal("20"),
    "max_discount_cap": Decimal("25"),
    "valid_from": NOW - timedelta(days=1),
    "valid_until": NOW + timedelta(days=30),
}

SINGLE_SLOT = {
    "name": "Flash Single Slot",
    "discount_type": "FIXED_AMOUNT",
    "discount_value": Decimal("5"),
    "max_usage_per_user": 1,
    "max_global_usage": 1,
    "valid_from": NOW - timedelta(days=1),
    "valid_until": NOW + timedelta(days=1),
}

EXPIRED_CAMPAIGN = {
    "name": "Spring Clearance",
    "discount_type": "FIXED_AMOUNT",
    "discount_value": Decimal("10"),
    "valid_from": NOW - timedelta(days=60),
    "valid_until": NOW - timedelta(days=1),
}

ADMIN_CAMPAIGN_PAYLOAD = {
    "name": "Black Friday 2026",
    "description": "Site-wide weekend promotion",
    "code_prefix": "bf-",
    "discount_type": "percentage",
    "discount_value": "15",
    "max_discount_cap": "40",
    "eligibility_tags": ["all_users"],
    "max_usage_per_user": 1,
    "max_global_usage": 1000,
    "valid_from": "2026-11-27T00:00:00Z",
    "valid_until": "2026-11-30T23:59:59Z",
}

ADMIN_TOKEN = "test-admin-token"
