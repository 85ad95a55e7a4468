"""
Pricing utilities.

Discounts apply to the full display price (base price + shipping buffer),
not to the base price, so the "X% off" badge matches what the customer
actually saves:

    display = (base + buffer) * (1 - pct / 100)      percentage
    display = max(0, (base + buffer) - amount)       flat

Example: base 100, 10% off -> 179 * 0.9 = 161.10.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from storefront.config import Config
from storefront.models import DiscountType, PricingBreakdown, Product

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_display_price(base_price: Number, buffer: Optional[Number] = None) -> Decimal:
    """Base price plus the fixed shipping buffer"""
    buffer = Config.SHIPPING_BUFFER if buffer is None else buffer
    return _to_decimal(base_price) + _to_decimal(buffer)


def calculate_discounted_display_price(
    display_price: Number,
    discount_type: DiscountType,
    discount_value: Number
) -> Decimal:
    """Apply a product discount to the full display price"""
    display_price = _to_decimal(display_price)
    discount_value = _to_decimal(discount_value)

    if discount_type == DiscountType.PERCENTAGE:
        return display_price * (1 - discount_value / HUNDRED)
    elif discount_type == DiscountType.FLAT:
        return max(ZERO, display_price - discount_value)
    return display_price


def derive_pricing(
    base_price: Number,
    discount_type: DiscountType = DiscountType.NONE,
    discount_value: Number = 0,
    buffer: Optional[Number] = None
) -> PricingBreakdown:
    """
    Compute the customer-visible price breakdown.

    Args:
        base_price: Admin-set base price
        discount_type: percentage, flat or none
        discount_value: Percentage (0-100 expected, not clamped) or amount
        buffer: Shipping buffer override, defaults to Config.SHIPPING_BUFFER

    Returns:
        PricingBreakdown
    """
    buffer = Config.SHIPPING_BUFFER if buffer is None else _to_decimal(buffer)
    base = _to_decimal(base_price)

    original_display_price = calculate_display_price(base, buffer)
    display_price = calculate_discounted_display_price(
        original_display_price,
        discount_type or DiscountType.NONE,
        discount_value
    )
    discount = original_display_price - display_price

    return PricingBreakdown(
        base_price=base,
        discounted_base_price=display_price - buffer,
        display_price=display_price,
        original_display_price=original_display_price,
        discount=discount,
        has_discount=display_price < original_display_price
    )


def get_product_pricing(product: Product) -> PricingBreakdown:
    """Pricing breakdown for a product; used everywhere a price is shown or summed"""
    return derive_pricing(
        product.effective_base_price,
        product.discount_type,
        product.discount_value
    )


def calculate_item_total(product: Product, quantity: int) -> Decimal:
    return get_product_pricing(product).display_price * quantity


def format_price(amount: Number) -> str:
    rounded = _to_decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{Config.CURRENCY_SYMBOL}{rounded}"


# Stock is always computed from stockBySize, never from the cached inStock flag

def is_product_in_stock(product: Product) -> bool:
    return any(stock > 0 for stock in product.stock_by_size.values())


def get_total_stock(product: Product) -> int:
    return sum(max(0, stock) for stock in product.stock_by_size.values())


def get_available_sizes_count(product: Product) -> int:
    return sum(1 for stock in product.stock_by_size.values() if stock > 0)
