from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storefront.combos import calculate_best_price, is_combo_active
from storefront.models import CartItem, ComboOffer, PricingOptionType
from tests.fakes import make_product


def line(product_id: str, quantity: int = 1, base_price="46", category=None) -> CartItem:
    # base 46 + buffer 79 = 125 display price
    product = make_product(product_id, base_price=base_price, category=category)
    return CartItem(product=product, size="M", quantity=quantity)


def combo(combo_id="c1", minimum=2, price="199", **kwargs) -> ComboOffer:
    return ComboOffer(
        id=combo_id,
        name=f"Any {minimum} for {price}",
        minimum_quantity=minimum,
        combo_price=Decimal(price),
        **kwargs
    )


def test_combo_beats_individual_pricing():
    items = [line("p1"), line("p2")]

    option = calculate_best_price(items, [combo()])

    assert option.type == PricingOptionType.COMBO
    assert option.total == Decimal("199")
    assert option.savings == Decimal("51")
    assert option.applied_combo.combo_id == "c1"
    assert option.applied_combo.original_price == Decimal("250")
    assert option.applied_combo.item_count == 2


def test_no_combo_when_minimum_not_met():
    option = calculate_best_price([line("p1")], [combo()])

    assert option.type == PricingOptionType.INDIVIDUAL
    assert option.total == Decimal("125")
    assert option.applied_combo is None


def test_combo_must_be_strictly_cheaper():
    option = calculate_best_price([line("p1"), line("p2")], [combo(price="250")])

    assert option.type == PricingOptionType.INDIVIDUAL
    assert option.savings == 0


def test_best_combo_is_selected():
    items = [line("p1"), line("p2"), line("p3")]
    offers = [combo("pair", 2, "199"), combo("triple", 3, "249")]

    option = calculate_best_price(items, offers)

    assert option.applied_combo.combo_id == "triple"
    assert option.total == Decimal("249")
    assert option.savings == Decimal("126")


def test_leftover_units_priced_individually():
    items = [line("p1", quantity=3)]

    option = calculate_best_price(items, [combo()])

    assert option.total == Decimal("324")
    assert option.applied_combo.item_count == 2
    assert "1 combo(s) + 1 individual item(s)" in option.breakdown


def test_ties_keep_first_offer():
    items = [line("p1"), line("p2")]

    option = calculate_best_price(items, [combo("first"), combo("second")])

    assert option.applied_combo.combo_id == "first"


def test_eligible_categories_limit_the_combo():
    items = [
        line("shirt-1", category="shirts"),
        line("shirt-2", category="shirts"),
        line("pants-1", category="pants"),
    ]

    option = calculate_best_price(items, [combo(eligible_categories=["shirts"])])

    assert option.total == Decimal("324")
    assert option.applied_combo.item_count == 2


def test_inactive_and_expired_combos_are_ignored():
    now = datetime(2026, 1, 10, tzinfo=timezone.utc)
    offers = [
        combo("off", active=False),
        combo("expired", end_date=now - timedelta(days=1)),
        combo("future", start_date=now + timedelta(days=1)),
    ]

    option = calculate_best_price([line("p1"), line("p2")], offers, now=now)

    assert option.type == PricingOptionType.INDIVIDUAL


def test_is_combo_active_accepts_naive_dates():
    offer = combo(start_date=datetime(2026, 1, 1), end_date=datetime(2026, 2, 1))

    assert is_combo_active(offer, datetime(2026, 1, 15, tzinfo=timezone.utc))
    assert not is_combo_active(offer, datetime(2026, 3, 1, tzinfo=timezone.utc))


def test_empty_cart():
    option = calculate_best_price([], [combo()])

    assert option.total == 0
    assert option.breakdown == "Empty cart"
