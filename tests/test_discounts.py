from decimal import Decimal

import pytest

from coupon_engine.services.discounts import compute_discount, round_money


def test_percentage_discount_is_limited_by_cap():
    outcome = compute_discount(
        discount_type="PERCENTAGE",
        discount_value=Decimal("20"),
        cart_subtotal=Decimal("150"),
        max_discount_cap=Decimal("25"),
    )

    assert outcome.amount == Decimal("25.00")
    assert str(outcome.amount) == "25.00"
    assert outcome.free_shipping is False


def test_percentage_discount_below_cap_is_not_capped():
    outcome = compute_discount(
        discount_type="PERCENTAGE",
        discount_value=Decimal("20"),
        cart_subtotal=Decimal("100"),
        max_discount_cap=Decimal("25"),
    )

    assert outcome.amount == Decimal("20.00")


def test_fixed_discount_never_exceeds_subtotal():
    outcome = compute_discount(
        discount_type="FIXED_AMOUNT",
        discount_value=Decimal("10"),
        cart_subtotal=Decimal("7.50"),
    )

    assert outcome.amount == Decimal("7.50")


def test_fixed_discount_ignores_cap():
    outcome = compute_discount(
        discount_type="FIXED_AMOUNT",
        discount_value=Decimal("50"),
        cart_subtotal=Decimal("200"),
        max_discount_cap=Decimal("5"),
    )

    assert outcome.amount == Decimal("50.00")


def test_free_shipping_has_zero_amount_and_flag():
    outcome = compute_discount(
        discount_type="FREE_SHIPPING",
        discount_value=Decimal("0"),
        cart_subtotal=Decimal("42.10"),
    )

    assert outcome.amount == Decimal("0.00")
    assert outcome.free_shipping is True


def test_percentage_rounds_half_up_to_minor_unit():
    # 12.5% of 0.20 = 0.025
    outcome = compute_discount(
        discount_type="PERCENTAGE",
        discount_value=Decimal("12.5"),
        cart_subtotal=Decimal("0.20"),
    )

    assert outcome.amount == Decimal("0.03")


def test_round_money_respects_currency_without_minor_units():
    assert round_money(Decimal("149.5"), minor_units=0) == Decimal("150")


def test_unknown_discount_type_is_rejected():
    with pytest.raises(ValueError):
        compute_discount(discount_type="BOGO", discount_value=1, cart_subtotal=10)


def test_same_inputs_give_same_discount():
    kwargs = {
        "discount_type": "PERCENTAGE",
        "discount_value": "33.333",
        "cart_subtotal": "89.99",
    }
    assert compute_discount(**kwargs) == compute_discount(**kwargs)
