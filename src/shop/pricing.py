"""Order pricing.

Totals are derived from the catalog only: whatever price a client sends along
with a cart line is never read. ``compute_order_totals`` is pure and works on
a variant snapshot; ``price_items`` fetches that snapshot first.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from db import crud
from db.models import Coupon, Variant
from shop.errors import InvalidDiscountCode, InvalidItem
from shop.money import ZERO, MoneyLike, non_negative, to_money


@dataclass(frozen=True)
class CartLine:
    variant_id: str
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    variant_id: str
    product_id: Optional[str]
    name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total: Decimal
    lines: List[PricedLine]


def validate_line(line: CartLine) -> None:
    if not line.variant_id:
        raise InvalidItem("Each item needs a variant id.")
    if isinstance(line.quantity, bool) or not isinstance(line.quantity, int):
        raise InvalidItem(f"Quantity for {line.variant_id} must be a whole number.")
    if line.quantity < 1:
        raise InvalidItem(f"Quantity for {line.variant_id} must be at least 1.")


def compute_order_totals(
    items: Sequence[CartLine],
    variants: Mapping[str, Variant],
    discount_amount: Optional[MoneyLike] = None,
    shipping_cost: Optional[MoneyLike] = None,
) -> OrderTotals:
    """
    Price ``items`` against ``variants`` (keyed by id).

    Discount and shipping count as zero when missing or negative. The
    discount never exceeds the subtotal, so the total is at least the
    shipping cost and never negative.
    """
    lines: List[PricedLine] = []
    for item in items:
        validate_line(item)
        variant = variants.get(item.variant_id)
        if variant is None:
            raise InvalidItem(f"Product variant {item.variant_id} does not exist.")
        if not variant.is_active:
            raise InvalidItem(f"{variant.name} is no longer available.")
        unit = to_money(variant.price)
        lines.append(
            PricedLine(
                variant_id=variant.id,
                product_id=variant.product_id,
                name=variant.name,
                quantity=item.quantity,
                unit_price=unit,
                total_price=to_money(unit * item.quantity),
            )
        )

    subtotal = to_money(sum((line.total_price for line in lines), ZERO))
    discount = min(non_negative(discount_amount), subtotal)
    shipping = non_negative(shipping_cost)
    total = to_money(subtotal - discount + shipping)
    return OrderTotals(
        subtotal=subtotal,
        discount_amount=discount,
        shipping_cost=shipping,
        total=max(total, ZERO),
        lines=lines,
    )


async def price_items(
    items: Sequence[CartLine],
    discount_amount: Optional[MoneyLike] = None,
    shipping_cost: Optional[MoneyLike] = None,
) -> OrderTotals:
    """Look the variants up in the catalog and price the cart."""
    for item in items:
        validate_line(item)
    variants: Dict[str, Variant] = await crud.get_variants(i.variant_id for i in items)
    return compute_order_totals(items, variants, discount_amount, shipping_cost)


def coupon_discount(
    coupon: Optional[Coupon], subtotal: Decimal, now: Optional[datetime] = None
) -> Decimal:
    """Discount granted by ``coupon`` on ``subtotal``; raises InvalidDiscountCode if unusable."""
    if coupon is None or not coupon.is_active:
        raise InvalidDiscountCode()
    now = now or datetime.now(timezone.utc)
    if coupon.expires_at is not None and coupon.expires_at <= now:
        raise InvalidDiscountCode(f"Discount code {coupon.code} has expired.")
    if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
        raise InvalidDiscountCode(f"Discount code {coupon.code} has been used up.")
    if subtotal < coupon.min_order_amount:
        raise InvalidDiscountCode(
            f"Discount code {coupon.code} requires a minimum order of {coupon.min_order_amount}."
        )
    if coupon.discount_type == "percentage":
        return min(to_money(subtotal * coupon.discount_value / 100), subtotal)
    return min(to_money(coupon.discount_value), subtotal)
