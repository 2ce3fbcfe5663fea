from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import coupon_engine.models  # noqa: F401
from coupon_engine.core.database import Base
from coupon_engine.services.campaign_store import CampaignSpec, CampaignStore
from coupon_engine.services.coupon_ledger import CouponLedger, CouponState, entry_state
from coupon_engine.services.errors import (
    CouponNotFound,
    DuplicateIssuance,
    InvalidCampaignSpec,
    LimitExceeded,
)
from tests.fixtures_data import NOW, SUMMER25, VIP50


def _build_ledger():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    return CouponLedger(db, clock=lambda: NOW)


def _campaign(ledger, data=SUMMER25, **overrides):
    campaign = CampaignStore(ledger.db, clock=ledger.clock).create_campaign(CampaignSpec(**{**data, **overrides}))
    ledger.db.commit()
    return campaign


def test_issue_generates_prefixed_code_and_defaults_expiry():
    ledger = _build_ledger()
    campaign = _campaign(ledger)

    entry = ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    assert entry.coupon_code.startswith("SUMMER25-")
    assert len(entry.coupon_code) == len("SUMMER25-") + 8
    assert entry.current_usage_count == 0
    assert entry.expires_at.replace(tzinfo=None) == SUMMER25["valid_until"].replace(tzinfo=None)


def test_issue_without_prefix_uses_default_prefix():
    ledger = _build_ledger()
    campaign = _campaign(ledger, code_prefix=None)

    entry = ledger.issue(campaign.id, "user-1")

    assert entry.coupon_code.startswith("COUPON-")


def test_unique_per_user_rejects_second_issuance():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    with pytest.raises(DuplicateIssuance):
        ledger.issue(campaign.id, "user-1")


def test_non_unique_campaign_allows_several_codes_per_user():
    ledger = _build_ledger()
    campaign = _campaign(ledger, is_unique_per_user=False)

    first = ledger.issue(campaign.id, "user-1")
    second = ledger.issue(campaign.id, "user-1")

    assert first.coupon_code != second.coupon_code


def test_explicit_code_is_normalized_and_must_be_free():
    ledger = _build_ledger()
    campaign = _campaign(ledger, is_unique_per_user=False)

    entry = ledger.issue(campaign.id, "user-1", coupon_code=" summer-vip ")
    ledger.db.commit()
    assert entry.coupon_code == "SUMMER-VIP"

    with pytest.raises(InvalidCampaignSpec):
        ledger.issue(campaign.id, "user-2", coupon_code="SUMMER-VIP")
    with pytest.raises(InvalidCampaignSpec):
        ledger.issue(campaign.id, "user-2", coupon_code="no spaces!")


def test_inactive_campaign_cannot_issue():
    ledger = _build_ledger()
    campaign = _campaign(ledger, is_active=False)

    with pytest.raises(InvalidCampaignSpec):
        ledger.issue(campaign.id, "user-1")


def test_find_entry_normalizes_code():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1", coupon_code="HELLO-2026")
    ledger.db.commit()

    assert ledger.find_entry("  hello-2026 ").id == entry.id
    with pytest.raises(CouponNotFound):
        ledger.find_entry("NOPE-0000")


def test_increment_usage_stops_at_per_user_cap():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    ledger.increment_usage(entry.id)
    ledger.increment_usage(entry.id)
    with pytest.raises(LimitExceeded):
        ledger.increment_usage(entry.id)
    ledger.db.commit()

    reloaded = ledger.get_entry(entry.id)
    assert reloaded.current_usage_count == 2
    assert reloaded.last_usage_at is not None


def test_deactivated_entry_cannot_be_incremented():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1")
    ledger.deactivate_entry(entry.id)
    ledger.db.commit()

    with pytest.raises(LimitExceeded):
        ledger.increment_usage(entry.id)


def test_decrement_usage_is_guarded_at_zero():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    with pytest.raises(LimitExceeded):
        ledger.decrement_usage(entry.id)


def test_entry_state_precedence():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    assert entry_state(entry, campaign, NOW) is CouponState.ISSUED_UNUSED
    entry.current_usage_count = 1
    assert entry_state(entry, campaign, NOW) is CouponState.PARTIALLY_USED
    entry.current_usage_count = 2
    assert entry_state(entry, campaign, NOW) is CouponState.EXHAUSTED
    assert entry_state(entry, campaign, NOW + timedelta(days=365)) is CouponState.EXPIRED
    entry.is_active = False
    assert entry_state(entry, campaign, NOW + timedelta(days=365)) is CouponState.DEACTIVATED


def test_entry_expiry_earlier_than_campaign_governs():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1", expires_at=NOW + timedelta(days=1))
    ledger.db.commit()

    assert entry_state(entry, campaign, NOW + timedelta(days=2)) is CouponState.EXPIRED


def test_issue_many_collects_duplicates():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    ledger.issue(campaign.id, "user-2")
    ledger.db.commit()

    report = ledger.issue_many(campaign.id, ["user-1", "user-2", "user-3"])

    assert [entry.user_id for entry in report.issued] == ["user-1", "user-3"]
    assert report.failures[0]["user_id"] == "user-2"


def test_list_for_user_filters_by_state():
    ledger = _build_ledger()
    summer = _campaign(ledger)
    vip = _campaign(ledger, VIP50)
    active = ledger.issue(summer.id, "user-1")
    used_up = ledger.issue(vip.id, "user-1")
    ledger.db.commit()
    ledger.increment_usage(used_up.id)
    ledger.db.commit()

    assert [entry.id for entry, _ in ledger.list_for_user("user-1")] == [active.id]
    exhausted = ledger.list_for_user("user-1", status="exhausted")
    assert [(entry.id, state) for entry, state in exhausted] == [(used_up.id, CouponState.EXHAUSTED)]
    assert len(ledger.list_for_user("user-1", status="all")) == 2


def test_enabling_uniqueness_is_refused_while_a_user_holds_several_coupons():
    ledger = _build_ledger()
    campaign = _campaign(ledger, is_unique_per_user=False)
    ledger.issue(campaign.id, "user-1")
    ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    with pytest.raises(InvalidCampaignSpec) as excinfo:
        ledger.campaigns.update_campaign(campaign.id, {"is_unique_per_user": True})
    ledger.db.rollback()

    assert "user-1" in str(excinfo.value)
    assert ledger.campaigns.get_campaign(campaign.id).is_unique_per_user is False


def test_enabling_uniqueness_backfills_owner_keys():
    ledger = _build_ledger()
    campaign = _campaign(ledger, is_unique_per_user=False)
    ledger.issue(campaign.id, "user-1")
    ledger.issue(campaign.id, "user-2")
    ledger.db.commit()

    ledger.campaigns.update_campaign(campaign.id, {"is_unique_per_user": True})
    ledger.db.commit()

    with pytest.raises(DuplicateIssuance):
        ledger.issue(campaign.id, "user-1")
    items, total = ledger.list_entries(campaign_id=campaign.id, user_id="user-1")
    assert total == 1
    assert items[0].unique_owner_key == f"{campaign.id}:user-1"


def test_disabling_uniqueness_allows_further_issuance():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    ledger.campaigns.update_campaign(campaign.id, {"is_unique_per_user": False})
    ledger.db.commit()
    ledger.issue(campaign.id, "user-1")
    ledger.db.commit()

    items, total = ledger.list_entries(campaign_id=campaign.id)
    assert total == 2
    assert all(item.unique_owner_key is None for item in items)


def test_update_entry_changes_expiry_and_refuses_fixed_fields():
    ledger = _build_ledger()
    campaign = _campaign(ledger)
    entry = ledger.issue(campaign.id, "user-1")
    ledger.deactivate_entry(entry.id)
    ledger.db.commit()

    updated = ledger.update_entry(entry.id, {"is_active": True, "expires_at": NOW + timedelta(days=3)})
    ledger.db.commit()

    assert entry_state(updated, campaign, NOW) is CouponState.ISSUED_UNUSED
    assert entry_state(updated, campaign, NOW + timedelta(days=4)) is CouponState.EXPIRED
    with pytest.raises(InvalidCampaignSpec):
        ledger.update_entry(entry.id, {"coupon_code": "SUMMER25-OTHER"})
    with pytest.raises(InvalidCampaignSpec):
        ledger.update_entry(entry.id, {"current_usage_count": 0})
    with pytest.raises(InvalidCampaignSpec):
        ledger.update_entry(entry.id, {"expires_at": NOW - timedelta(days=1)})
