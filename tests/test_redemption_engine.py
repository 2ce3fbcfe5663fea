from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import coupon_engine.models  # noqa: F401
from coupon_engine.core.database import Base
from coupon_engine.models.coupon_redemption import CouponRedemption
from coupon_engine.services.campaign_store import CampaignSpec, CampaignStore
from coupon_engine.services.coupon_ledger import CouponLedger
from coupon_engine.services.eligibility import build_profile
from coupon_engine.services.errors import RedemptionFailure, StoreUnavailable
from coupon_engine.services.redemption import CartItem, CartSnapshot, RedemptionEngine
from tests.fixtures_data import CAPPED_PERCENTAGE, EXPIRED_CAMPAIGN, NOW, SINGLE_SLOT, SUMMER25, VIP50


def _build_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _setup(data, user_id="user-1", **overrides):
    db = _build_session()
    campaign = CampaignStore(db, clock=lambda: NOW).create_campaign(CampaignSpec(**{**data, **overrides}))
    entry = CouponLedger(db, clock=lambda: NOW).issue(campaign.id, user_id)
    db.commit()
    engine = RedemptionEngine(db, clock=lambda: NOW, commit_mode="transactional")
    return engine, campaign.id, entry.coupon_code, entry.id


def _counters(engine, campaign_id, entry_id):
    return (
        engine.ledger.get_entry(entry_id).current_usage_count,
        engine.campaigns.get_campaign(campaign_id).global_usage_count,
    )


def _cart(subtotal, *items):
    return CartSnapshot.build(Decimal(subtotal), items)


def test_summer25_applies_then_hits_per_user_limit():
    engine, campaign_id, code, entry_id = _setup(SUMMER25)

    first = engine.apply_coupon(code, "user-1", _cart("200"))

    assert first.success is True
    assert first.committed is True
    assert first.discount_amount == Decimal("50.00")
    assert first.discounted_subtotal == Decimal("150.00")
    assert first.current_usage_count == 1
    assert first.global_usage_count == 1
    assert first.remaining_user_uses == 1
    assert _counters(engine, campaign_id, entry_id) == (1, 1)

    second = engine.apply_coupon(code, "user-1", _cart("200"))
    third = engine.apply_coupon(code, "user-1", _cart("200"))

    assert second.success is True
    assert third.success is False
    assert third.failure is RedemptionFailure.PER_USER_LIMIT_REACHED
    assert _counters(engine, campaign_id, entry_id) == (2, 2)


def test_vip50_below_minimum_purchase_mutates_nothing():
    engine, campaign_id, code, entry_id = _setup(VIP50)

    result = engine.apply_coupon(code, "user-1", _cart("150"))

    assert result.success is False
    assert result.failure is RedemptionFailure.BELOW_MINIMUM_PURCHASE
    assert result.message == "Your cart does not reach the minimum purchase amount for this coupon"
    assert result.discount_amount == Decimal("0")
    assert _counters(engine, campaign_id, entry_id) == (0, 0)


def test_expired_coupon_fails_even_when_unused():
    engine, campaign_id, code, entry_id = _setup(EXPIRED_CAMPAIGN)

    result = engine.apply_coupon(code, "user-1", _cart("80"))

    assert result.failure is RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE
    assert _counters(engine, campaign_id, entry_id) == (0, 0)


def test_preview_is_side_effect_free():
    engine, campaign_id, code, entry_id = _setup(CAPPED_PERCENTAGE)

    results = [engine.preview_discount(code, "user-1", _cart("150")) for _ in range(3)]

    assert all(result.success for result in results)
    assert {result.discount_amount for result in results} == {Decimal("25.00")}
    assert not any(result.committed for result in results)
    assert _counters(engine, campaign_id, entry_id) == (0, 0)


def test_code_lookup_is_case_insensitive():
    engine, _, code, _ = _setup(SUMMER25)

    result = engine.preview_discount(f"  {code.lower()} ", "user-1", _cart("120"))

    assert result.success is True
    assert result.coupon_code == code


def test_unknown_code_and_foreign_owner_are_not_found():
    engine, campaign_id, code, entry_id = _setup(SUMMER25)

    missing = engine.apply_coupon("NOPE-1234", "user-1", _cart("200"))
    foreign = engine.apply_coupon(code, "user-2", _cart("200"))

    assert missing.failure is RedemptionFailure.COUPON_NOT_FOUND
    assert missing.campaign_id is None
    assert foreign.failure is RedemptionFailure.COUPON_NOT_FOUND
    assert _counters(engine, campaign_id, entry_id) == (0, 0)


def test_inactive_campaign_is_rejected():
    engine, campaign_id, code, _ = _setup(SUMMER25)
    engine.campaigns.deactivate_campaign(campaign_id)
    engine.db.commit()

    result = engine.apply_coupon(code, "user-1", _cart("200"))

    assert result.failure is RedemptionFailure.CAMPAIGN_INACTIVE


def test_deactivated_entry_is_rejected():
    engine, _, code, entry_id = _setup(SUMMER25)
    engine.ledger.deactivate_entry(entry_id)
    engine.db.commit()

    result = engine.preview_discount(code, "user-1", _cart("200"))

    assert result.failure is RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE


def test_items_must_match_campaign_scope():
    engine, _, code, _ = _setup(CAPPED_PERCENTAGE, applicable_category_ids=["shoes"])

    hats = engine.preview_discount(code, "user-1", _cart("50", CartItem(item_id="sku-1", category_id="hats")))
    shoes = engine.preview_discount(code, "user-1", _cart("50", CartItem(item_id="sku-2", category_id="shoes")))

    assert hats.failure is RedemptionFailure.ITEMS_NOT_ELIGIBLE
    assert shoes.success is True
    assert shoes.discount_amount == Decimal("10.00")


def test_user_must_pass_eligibility_tags():
    engine, _, code, _ = _setup(CAPPED_PERCENTAGE, eligibility_tags=["NEW_USER"])

    rejected = engine.preview_discount(code, "user-1", _cart("50"), build_profile([], 0))
    accepted = engine.preview_discount(code, "user-1", _cart("50"), build_profile(["NEW_USER"], 0))

    assert rejected.failure is RedemptionFailure.USER_NOT_ELIGIBLE
    assert accepted.success is True


def test_global_limit_reached_for_next_user():
    engine, campaign_id, code, _ = _setup(SINGLE_SLOT)
    other = engine.ledger.issue(campaign_id, "user-2")
    engine.db.commit()

    assert engine.apply_coupon(code, "user-1", _cart("20")).success is True
    result = engine.apply_coupon(other.coupon_code, "user-2", _cart("20"))

    assert result.failure is RedemptionFailure.GLOBAL_LIMIT_REACHED
    assert engine.campaigns.get_campaign(campaign_id).global_usage_count == 1


def test_free_shipping_coupon_sets_flag():
    engine, _, code, _ = _setup(VIP50, discount_type="FREE_SHIPPING", min_purchase_amount=None)

    result = engine.apply_coupon(code, "user-1", _cart("30"))

    assert result.success is True
    assert result.free_shipping is True
    assert result.discount_amount == Decimal("0.00")
    assert result.discounted_subtotal == Decimal("30.00")


def test_same_idempotency_key_replays_without_counting_twice():
    engine, campaign_id, code, entry_id = _setup(SUMMER25)

    first = engine.apply_coupon(code, "user-1", _cart("200"), idempotency_key="order-77")
    again = engine.apply_coupon(code, "user-1", _cart("200"), idempotency_key="order-77")

    assert first.replayed is False
    assert again.success is True
    assert again.replayed is True
    assert again.discount_amount == first.discount_amount
    assert again.current_usage_count == 1
    assert _counters(engine, campaign_id, entry_id) == (1, 1)
    assert engine.db.query(CouponRedemption).count() == 1

    other_order = engine.apply_coupon(code, "user-1", _cart("200"), idempotency_key="order-78")
    assert other_order.replayed is False
    assert _counters(engine, campaign_id, entry_id) == (2, 2)


def test_replay_wins_over_exhausted_entry():
    engine, _, code, _ = _setup(VIP50)

    engine.apply_coupon(code, "user-1", _cart("250"), idempotency_key="order-1")
    replay = engine.apply_coupon(code, "user-1", _cart("250"), idempotency_key="order-1")

    assert replay.success is True
    assert replay.replayed is True
    assert replay.remaining_user_uses == 0


def test_store_outage_surfaces_as_store_unavailable(monkeypatch):
    engine, _, code, _ = _setup(SUMMER25)

    def boom(_code):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(engine.ledger, "find_entry", boom)

    with pytest.raises(StoreUnavailable):
        engine.preview_discount(code, "user-1", _cart("200"))


def test_unknown_commit_mode_is_rejected():
    with pytest.raises(ValueError):
        RedemptionEngine(_build_session(), commit_mode="eventual")


def test_restricted_scope_discounts_only_matching_items():
    engine, _, code, _ = _setup(CAPPED_PERCENTAGE, applicable_category_ids=["shoes"])
    cart = _cart(
        "1000",
        CartItem(item_id="sneaker", category_id="shoes", quantity=1, unit_price=Decimal("10")),
        CartItem(item_id="tv", category_id="electronics", quantity=1, unit_price=Decimal("990")),
    )

    result = engine.preview_discount(code, "user-1", cart)

    assert result.success is True
    assert result.discount_amount == Decimal("2.00")
    assert result.discounted_subtotal == Decimal("998.00")
    assert result.applicable_items == 1


def test_unrestricted_scope_counts_every_cart_item():
    engine, _, code, _ = _setup(CAPPED_PERCENTAGE)
    cart = _cart(
        "60",
        CartItem(item_id="a", unit_price=Decimal("20")),
        CartItem(item_id="b", quantity=2, unit_price=Decimal("20")),
    )

    result = engine.preview_discount(code, "user-1", cart)

    assert result.discount_amount == Decimal("12.00")
    assert result.applicable_items == 2


def test_fixed_discount_on_matching_items_never_exceeds_cart_total():
    engine, _, code, _ = _setup(VIP50, min_purchase_amount=None, applicable_item_ids=["gift-card"])
    cart = _cart("30", CartItem(item_id="gift-card", quantity=3, unit_price=Decimal("10")))

    result = engine.preview_discount(code, "user-1", cart)

    assert result.discount_amount == Decimal("30.00")
    assert result.discounted_subtotal == Decimal("0.00")


def test_coupon_is_valid_at_the_exact_campaign_end():
    engine, campaign_id, code, entry_id = _setup(
        SUMMER25, valid_from=NOW - timedelta(days=1), valid_until=NOW
    )

    result = engine.apply_coupon(code, "user-1", _cart("200"))

    assert result.success is True
    assert _counters(engine, campaign_id, entry_id) == (1, 1)


def test_coupon_is_valid_at_the_exact_entry_expiry():
    db = _build_session()
    campaign = CampaignStore(db, clock=lambda: NOW).create_campaign(CampaignSpec(**SUMMER25))
    entry = CouponLedger(db, clock=lambda: NOW).issue(campaign.id, "user-1", expires_at=NOW)
    db.commit()
    engine = RedemptionEngine(db, clock=lambda: NOW, commit_mode="transactional")

    at_expiry = engine.preview_discount(entry.coupon_code, "user-1", _cart("200"))
    later = RedemptionEngine(db, clock=lambda: NOW + timedelta(seconds=1)).preview_discount(
        entry.coupon_code, "user-1", _cart("200")
    )

    assert at_expiry.success is True
    assert later.failure is RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE


def test_coupon_before_campaign_start_is_rejected():
    engine, campaign_id, code, entry_id = _setup(
        SUMMER25, valid_from=NOW + timedelta(days=1), valid_until=NOW + timedelta(days=10)
    )

    result = engine.apply_coupon(code, "user-1", _cart("200"))

    assert result.failure is RedemptionFailure.COUPON_EXPIRED_OR_INACTIVE
    assert _counters(engine, campaign_id, entry_id) == (0, 0)
