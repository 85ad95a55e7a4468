"""
Best-price engine for quantity-based combo offers.

Compares individual pricing against every combo the cart qualifies for and
picks the cheapest option for the customer. The result is informational;
the order backend re-verifies combos when the order is created.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from storefront.models import (
    AppliedCombo,
    CartItem,
    ComboOffer,
    ComboType,
    PricingOption,
    PricingOptionType,
)
from storefront.pricing import get_product_pricing

ZERO = Decimal("0")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def is_combo_active(combo: ComboOffer, now: Optional[datetime] = None) -> bool:
    """Active flag set and now inside [start_date, end_date]"""
    if not combo.active:
        return False
    now = _aware(now or _utcnow())
    if combo.start_date and now < _aware(combo.start_date):
        return False
    if combo.end_date and now > _aware(combo.end_date):
        return False
    return True


def is_item_eligible(item: CartItem, combo: ComboOffer) -> bool:
    """No product/category filter means every item counts"""
    if combo.eligible_products and item.product.id not in combo.eligible_products:
        return False
    if combo.eligible_categories and item.product.category not in combo.eligible_categories:
        return False
    return True


def calculate_individual_total(items: Iterable[CartItem]) -> Decimal:
    return sum(
        (get_product_pricing(item.product).display_price * item.quantity for item in items),
        ZERO
    )


def _price_combo(
    items: Sequence[CartItem],
    combo: ComboOffer,
    individual_total: Decimal
) -> Optional[PricingOption]:
    eligible = [item for item in items if is_item_eligible(item, combo)]
    eligible_quantity = sum(item.quantity for item in eligible)

    if eligible_quantity < combo.minimum_quantity:
        return None

    combo_count = eligible_quantity // combo.minimum_quantity
    remaining = eligible_quantity % combo.minimum_quantity

    # Leftover eligible units are priced individually, in cart order
    remaining_total = ZERO
    units_to_price = remaining
    for item in eligible:
        if units_to_price <= 0:
            break
        qty = min(item.quantity, units_to_price)
        remaining_total += get_product_pricing(item.product).display_price * qty
        units_to_price -= qty

    ineligible_total = calculate_individual_total(
        item for item in items if not is_item_eligible(item, combo)
    )

    total = combo.combo_price * combo_count + remaining_total + ineligible_total
    savings = individual_total - total

    return PricingOption(
        type=PricingOptionType.COMBO,
        total=total,
        savings=savings,
        applied_combo=AppliedCombo(
            combo_id=combo.id,
            combo_name=combo.name,
            combo_price=combo.combo_price,
            original_price=individual_total,
            savings=savings,
            item_count=combo_count * combo.minimum_quantity,
            applied_at=_utcnow()
        ),
        breakdown=f"{combo.name}: {combo_count} combo(s) + {remaining} individual item(s)"
    )


def calculate_best_price(
    items: Sequence[CartItem],
    combos: Sequence[ComboOffer],
    now: Optional[datetime] = None
) -> PricingOption:
    """
    Pick the cheapest pricing option for the given cart lines.

    A combo wins only when strictly cheaper than individual pricing. Among
    combos, the lowest total wins; ties go to the greater savings, then to
    the earlier offer in the list.

    Args:
        items: Valid (available) cart lines
        combos: Offers to consider; inactive or non quantity-based ones are skipped
        now: Clock override for the activity window check

    Returns:
        PricingOption
    """
    if not items:
        return PricingOption(
            type=PricingOptionType.INDIVIDUAL,
            total=ZERO,
            savings=ZERO,
            breakdown="Empty cart"
        )

    individual_total = calculate_individual_total(items)
    best = PricingOption(
        type=PricingOptionType.INDIVIDUAL,
        total=individual_total,
        savings=ZERO,
        breakdown="Individual product pricing with discounts"
    )

    candidates: List[PricingOption] = []
    for combo in combos:
        if combo.type != ComboType.QUANTITY_BASED or not is_combo_active(combo, now):
            continue
        option = _price_combo(items, combo, individual_total)
        if option is not None and option.total < individual_total:
            candidates.append(option)

    if candidates:
        # min() keeps the first of equal keys, so list order breaks the last tie
        best = min(candidates, key=lambda option: (option.total, -option.savings))

    return best
