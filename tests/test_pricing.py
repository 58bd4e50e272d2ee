from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from storefront.pricing import (
    CartLine,
    PromoCode,
    calculate_discount,
    calculate_totals,
    check_promo,
    money,
    normalize_code,
    price_cart,
    reconcile_client_total,
)


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _promo(**kw) -> PromoCode:
    base = dict(code="SPRING10", discount_type="percentage", discount_value=Decimal("10"))
    base.update(kw)
    return PromoCode(**base)


def test_normalize_code_trims_and_uppercases():
    assert normalize_code("  spring10 ") == "SPRING10"
    assert normalize_code(None) == ""


def test_missing_or_inactive_promo_is_rejected():
    assert check_promo(None, 100, NOW).error == "Promo code not found or inactive"
    assert check_promo(_promo(is_active=False), 100, NOW).valid is False


def test_promo_not_started_and_expired():
    early = check_promo(_promo(valid_from=NOW + timedelta(days=1)), 100, NOW)
    assert early.valid is False
    assert early.error == "Promo code is not active yet"

    late = check_promo(_promo(valid_until=NOW - timedelta(seconds=1)), 100, NOW)
    assert late.valid is False
    assert late.error == "Promo code has expired"


def test_naive_validity_dates_are_treated_as_utc():
    promo = _promo(valid_until=datetime(2025, 3, 1, 11, 0))
    assert check_promo(promo, 100, NOW).error == "Promo code has expired"


def test_minimum_order_amount_message():
    check = check_promo(_promo(min_order_amount=Decimal("500.00")), Decimal("499.99"), NOW)
    assert check.valid is False
    assert check.error == "Minimum order amount is 500.00 UAH"
    assert check_promo(_promo(min_order_amount=Decimal("500.00")), 500, NOW).valid is True


def test_usage_limit_reached():
    check = check_promo(_promo(max_uses=5, used_count=5), 100, NOW)
    assert check.valid is False
    assert check.error == "Promo code usage limit reached"
    assert check_promo(_promo(max_uses=5, used_count=4), 100, NOW).valid is True


def test_unknown_discount_type_is_invalid_config():
    assert check_promo(_promo(discount_type="bogo"), 100, NOW).error == "Invalid promo configuration"


def test_percentage_discount_rounds_half_up():
    assert calculate_discount(_promo(discount_value=Decimal("15")), Decimal("333.33")) == Decimal("50.00")
    assert calculate_discount(_promo(discount_value=Decimal("10")), Decimal("0.05")) == Decimal("0.01")


def test_fixed_discount_never_exceeds_total():
    promo = _promo(discount_type="fixed", discount_value=Decimal("300"))
    assert calculate_discount(promo, Decimal("1000")) == Decimal("300.00")
    assert calculate_discount(promo, Decimal("120.50")) == Decimal("120.50")


def test_discount_on_empty_total_is_zero():
    assert calculate_discount(_promo(), 0) == Decimal("0.00")


def test_totals_without_promo_below_free_shipping():
    lines = [CartLine(1, 2, Decimal("450.00")), CartLine(2, 1, Decimal("99.99"))]
    totals = calculate_totals(lines)
    assert totals.subtotal == Decimal("999.99")
    assert totals.discount_amount == Decimal("0.00")
    assert totals.total == Decimal("999.99")
    assert totals.free_shipping is False
    assert totals.amount_to_free_shipping == Decimal("3000.01")
    assert totals.promo_code is None


def test_free_shipping_is_judged_after_discount():
    lines = [CartLine(1, 1, Decimal("4200.00"))]
    assert calculate_totals(lines).free_shipping is True

    totals = calculate_totals(lines, _promo(discount_value=Decimal("10")))
    assert totals.discount_amount == Decimal("420.00")
    assert totals.discounted_subtotal == Decimal("3780.00")
    assert totals.free_shipping is False
    assert totals.amount_to_free_shipping == Decimal("220.00")
    assert totals.promo_code == "SPRING10"


def test_client_total_within_a_kopeck_is_accepted():
    totals = calculate_totals([CartLine(1, 1, Decimal("100.00"))])
    reconcile_client_total(totals, None)
    reconcile_client_total(totals, 100.01)
    reconcile_client_total(totals, "99.99")


def test_client_total_mismatch_is_a_conflict():
    totals = calculate_totals([CartLine(1, 1, Decimal("100.00"))])
    with pytest.raises(HTTPException) as ei:
        reconcile_client_total(totals, 90)
    assert ei.value.status_code == 409
    assert "expected 100.00 UAH" in ei.value.detail


def test_price_cart_uses_catalog_prices():
    products = {1: {"price": Decimal("250.5"), "in_stock": True, "name": "Сироватка"}}
    lines = price_cart([(1, 3)], products)
    assert lines == [CartLine(1, 3, Decimal("250.50"), "Сироватка")]
    assert lines[0].line_total == Decimal("751.50")


def test_price_cart_rejects_unknown_and_out_of_stock():
    products = {1: {"price": 10, "in_stock": False, "name": "Крем"}}
    with pytest.raises(HTTPException) as ei:
        price_cart([(2, 1)], products)
    assert ei.value.status_code == 400
    assert "Invalid product ids" in ei.value.detail

    with pytest.raises(HTTPException) as ei:
        price_cart([(1, 1)], products)
    assert "Out of stock" in ei.value.detail


def test_from_row_normalizes_code_and_money():
    promo = PromoCode.from_row(
        {"id": 7, "code": "welcome", "discount_type": "FIXED", "discount_value": 50, "min_order_amount": None}
    )
    assert promo.code == "WELCOME"
    assert promo.discount_type == "fixed"
    assert promo.discount_value == money(50)
    assert promo.min_order_amount == Decimal("0.00")
