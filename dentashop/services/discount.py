"""
Discount computation

Pure functions over a promotion and a cart snapshot. No I/O, no clock:
the same promotion and cart always give the same amount.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Sequence, Union

from dentashop.models.promotion import Promotion, PromotionType

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")


@dataclass
class CartLine:
    """One line of the caller's cart snapshot (not persisted)."""
    product_id: int
    quantity: int
    price: Decimal  # unit price
    category_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        return cls(
            product_id=int(data["product_id"]),
            quantity=int(data["quantity"]),
            price=to_decimal(data["price"]),
            category_ids=[int(c) for c in (data.get("category_ids") or [])],
        )


CartItemInput = Union[CartLine, Dict[str, Any]]


def to_decimal(value: Any) -> Decimal:
    """Convert floats/ints/strings to Decimal without binary float noise."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cart_lines(items: Iterable[CartItemInput]) -> List[CartLine]:
    return [item if isinstance(item, CartLine) else CartLine.from_dict(item) for item in items]


def round_currency(amount: Decimal) -> Decimal:
    """Round half-up to cents."""
    return to_decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def format_amount(amount: Any) -> str:
    """Render an amount for customer messages: 50.00 -> '50', 12.50 -> '12.5'."""
    value = to_decimal(amount)
    if value == value.to_integral_value():
        return str(value.to_integral_value())
    return f"{value.normalize():f}"


def eligible_lines(promotion: Promotion, cart_lines: Sequence[CartLine]) -> List[CartLine]:
    """Lines the promotion's product set covers (all lines when unrestricted)."""
    product_ids = set(promotion.product_ids or [])
    if not product_ids:
        return list(cart_lines)
    return [line for line in cart_lines if line.product_id in product_ids]


def calculate_buy_x_get_y_discount(promotion: Promotion, cart_lines: Sequence[CartLine]) -> Decimal:
    """
    Value of the free units earned by a buy-X-get-Y promotion.

    Free units go to the cheapest eligible units first. sorted() is stable,
    so lines with the same price keep cart order.
    """
    buy_quantity = promotion.buy_quantity or 0
    get_quantity = promotion.get_quantity or 0
    if buy_quantity <= 0 or get_quantity <= 0:
        return ZERO

    lines = eligible_lines(promotion, cart_lines)
    total_quantity = sum(line.quantity for line in lines)
    applicable_offers = total_quantity // buy_quantity
    if applicable_offers < 1:
        return ZERO

    free_units = applicable_offers * get_quantity
    discount = ZERO
    for line in sorted(lines, key=lambda l: to_decimal(l.price)):
        if free_units <= 0:
            break
        given = min(free_units, line.quantity)
        discount += given * to_decimal(line.price)
        free_units -= given

    return discount


def calculate_discount(
    promotion: Promotion,
    cart_total: Decimal,
    cart_lines: Sequence[CartLine],
) -> Decimal:
    """Monetary discount for a promotion that already passed validation."""
    cart_total = to_decimal(cart_total)
    discount_value = to_decimal(promotion.discount_value)

    if promotion.type == PromotionType.PERCENTAGE.value:
        discount = cart_total * discount_value / Decimal("100")
        if promotion.maximum_discount_amount:
            discount = min(discount, to_decimal(promotion.maximum_discount_amount))

    elif promotion.type == PromotionType.FIXED_AMOUNT.value:
        discount = min(discount_value, cart_total)

    elif promotion.type == PromotionType.FREE_SHIPPING.value:
        # Shipping waiver is applied by the order flow (EvaluationResult.free_shipping)
        discount = ZERO

    elif promotion.type == PromotionType.BUY_X_GET_Y.value:
        discount = calculate_buy_x_get_y_discount(promotion, cart_lines)

    else:
        discount = ZERO

    return round_currency(discount)
