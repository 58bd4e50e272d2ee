"""Promo-code checks, discount maths and order totals.

All money is Decimal rounded to kopecks. Nothing here touches the database;
callers load the promo row and product prices and pass them in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, List, Mapping, Optional

from fastapi import HTTPException

from .config import FREE_SHIPPING_THRESHOLD, SHIPPING_COST


KOPECK = Decimal("0.01")
TOTAL_TOLERANCE = Decimal("0.01")

PERCENTAGE = "percentage"
FIXED = "fixed"


def money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(KOPECK, rounding=ROUND_HALF_UP)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class PromoCode:
    code: str
    discount_type: str
    discount_value: Decimal
    min_order_amount: Decimal = Decimal("0")
    max_uses: Optional[int] = None
    used_count: int = 0
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    id: Optional[int] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PromoCode":
        return cls(
            id=row.get("id"),
            code=normalize_code(row["code"]),
            discount_type=str(row["discount_type"] or "").lower(),
            discount_value=money(row["discount_value"]),
            min_order_amount=money(row.get("min_order_amount")),
            max_uses=row.get("max_uses"),
            used_count=int(row.get("used_count") or 0),
            valid_from=row.get("valid_from"),
            valid_until=row.get("valid_until"),
            is_active=bool(row.get("is_active", True)),
            description=row.get("description"),
        )


@dataclass(frozen=True)
class PromoCheck:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal
    name: str = ""

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_amount: Decimal
    discounted_subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    free_shipping: bool
    amount_to_free_shipping: Decimal
    promo_code: Optional[str] = None


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def check_promo(promo: Optional[PromoCode], order_total: Any, now: Optional[datetime] = None) -> PromoCheck:
    if promo is None or not promo.is_active:
        return PromoCheck(False, "Promo code not found or inactive")

    now = _aware(now) or datetime.now(timezone.utc)
    valid_from = _aware(promo.valid_from)
    valid_until = _aware(promo.valid_until)

    if valid_from is not None and valid_from > now:
        return PromoCheck(False, "Promo code is not active yet")
    if valid_until is not None and valid_until < now:
        return PromoCheck(False, "Promo code has expired")
    if money(order_total) < promo.min_order_amount:
        return PromoCheck(False, f"Minimum order amount is {promo.min_order_amount} UAH")
    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        return PromoCheck(False, "Promo code usage limit reached")
    if promo.discount_type not in (PERCENTAGE, FIXED):
        return PromoCheck(False, "Invalid promo configuration")
    return PromoCheck(True)


def calculate_discount(promo: PromoCode, order_total: Any) -> Decimal:
    total = money(order_total)
    if total <= 0:
        return Decimal("0.00")

    if promo.discount_type == PERCENTAGE:
        discount = total * promo.discount_value / Decimal(100)
    elif promo.discount_type == FIXED:
        discount = min(promo.discount_value, total)
    else:
        return Decimal("0.00")

    discount = money(discount)
    return max(Decimal("0.00"), min(discount, total))


def calculate_totals(lines: Iterable[CartLine], promo: Optional[PromoCode] = None) -> OrderTotals:
    subtotal = money(sum((line.line_total for line in lines), Decimal("0")))
    discount = calculate_discount(promo, subtotal) if promo is not None else Decimal("0.00")
    discounted = money(max(Decimal("0"), subtotal - discount))

    free_shipping = discounted >= FREE_SHIPPING_THRESHOLD
    shipping = Decimal("0.00") if free_shipping else money(SHIPPING_COST)
    to_free = money(max(Decimal("0"), FREE_SHIPPING_THRESHOLD - discounted))

    return OrderTotals(
        subtotal=subtotal,
        discount_amount=discount,
        discounted_subtotal=discounted,
        shipping_cost=shipping,
        total=money(discounted + shipping),
        free_shipping=free_shipping,
        amount_to_free_shipping=to_free,
        promo_code=promo.code if promo is not None else None,
    )


def reconcile_client_total(totals: OrderTotals, client_total: Any) -> None:
    """Reject a checkout whose client-side total drifted from the server price."""
    if client_total is None:
        return
    if abs(money(client_total) - totals.total) > TOTAL_TOLERANCE:
        raise HTTPException(
            status_code=409,
            detail=f"Order total changed: expected {totals.total} UAH, got {money(client_total)} UAH",
        )


def price_cart(items: Iterable[tuple[int, int]], products: Mapping[int, Mapping[str, Any]]) -> List[CartLine]:
    """Build cart lines from (product_id, quantity) pairs using catalog prices."""
    lines: List[CartLine] = []
    missing: List[int] = []
    unavailable: List[int] = []
    for product_id, quantity in items:
        product = products.get(int(product_id))
        if product is None:
            missing.append(int(product_id))
            continue
        if not product.get("in_stock", True):
            unavailable.append(int(product_id))
            continue
        lines.append(
            CartLine(
                product_id=int(product_id),
                quantity=int(quantity),
                unit_price=money(product["price"]),
                name=str(product.get("name") or ""),
            )
        )
    if missing:
        raise HTTPException(status_code=400, detail=f"Invalid product ids: {missing}")
    if unavailable:
        raise HTTPException(status_code=400, detail=f"Out of stock: {unavailable}")
    return lines
