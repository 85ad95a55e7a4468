import asyncio
from decimal import Decimal

import httpx
import pytest

from storefront.api_client import StorefrontAPIClient
from storefront.cart_store import CartStore
from storefront.exceptions import SanitizationError
from storefront.models import (
    CartItem,
    CartLineStatus,
    CartLineValidation,
    CartValidation,
    UnavailableReason,
    ValidationState,
)
from storefront.sanitizer import (
    CartSanitizer,
    classify_item,
    partition_items,
    partition_validation,
)
from tests.fakes import make_product


def run(coro):
    return asyncio.run(coro)


def test_size_out_of_stock_is_flagged(api):
    api.add_product(make_product("p1", stock={"M": 0, "L": 4}))
    store = CartStore(items=[CartItem(product=make_product("p1", stock={"M": 3}), size="M", quantity=2)])

    result = run(CartSanitizer(api).sanitize(store))

    assert result.valid_items == []
    [flag] = result.unavailable_items
    assert flag.key == ("p1", "M")
    assert flag.reason == UnavailableReason.SIZE_OUT_OF_STOCK
    assert flag.max_available == 0
    assert not store.can_checkout()


def test_missing_product_is_flagged(api):
    store = CartStore(items=[CartItem(product=make_product("gone"), size="M", quantity=1)])

    result = run(CartSanitizer(api).sanitize(store))

    [flag] = result.unavailable_items
    assert flag.reason == UnavailableReason.PRODUCT_NOT_FOUND
    assert flag.message == "This product is no longer available"


def test_insufficient_stock_is_flagged_not_clamped(api):
    api.add_product(make_product("p1", stock={"M": 2}))
    store = CartStore(items=[CartItem(product=make_product("p1"), size="M", quantity=5)])

    result = run(CartSanitizer(api).sanitize(store))

    [flag] = result.unavailable_items
    assert flag.reason == UnavailableReason.INSUFFICIENT_STOCK
    assert flag.max_available == 2
    assert flag.message == "Only 2 units available"
    assert store.get_item_count("p1", "M") == 5


def test_every_line_lands_in_exactly_one_partition(api):
    api.add_product(make_product("ok", stock={"M": 5}))
    api.add_product(make_product("short", stock={"M": 1}))
    api.add_product(make_product("sold", stock={"M": 0}))
    items = [
        CartItem(product=make_product("ok"), size="M", quantity=2),
        CartItem(product=make_product("short"), size="M", quantity=3),
        CartItem(product=make_product("sold"), size="M", quantity=1),
        CartItem(product=make_product("missing"), size="M", quantity=1),
    ]
    store = CartStore(items=items)

    result = run(CartSanitizer(api).sanitize(store))

    keys = [item.key for item in result.valid_items] + [flag.key for flag in result.unavailable_items]
    assert sorted(keys) == sorted(item.key for item in items)
    assert [item.key for item in result.valid_items] == [("ok", "M")]
    assert store.validation_state == ValidationState.VALIDATED


def test_sanitize_is_idempotent(api):
    api.add_product(make_product("p1", stock={"M": 0}))
    api.add_product(make_product("p2"))
    store = CartStore(items=[
        CartItem(product=make_product("p1"), size="M", quantity=1),
        CartItem(product=make_product("p2"), size="M", quantity=1),
    ])
    sanitizer = CartSanitizer(api)

    first = run(sanitizer.sanitize(store))
    second = run(sanitizer.sanitize(store))

    assert first.unavailable_items == second.unavailable_items
    assert first.valid_items == second.valid_items


def test_products_are_fetched_in_batches_without_cart_validation(api):
    api.cart_validation_supported = False
    items = []
    for n in range(7):
        api.add_product(make_product(f"p{n}"))
        items.append(CartItem(product=make_product(f"p{n}"), size="S", quantity=1))
        items.append(CartItem(product=make_product(f"p{n}"), size="M", quantity=1))
    store = CartStore(items=items)

    result = run(CartSanitizer(api, batch_size=3).sanitize(store))

    assert sorted(api.product_calls) == sorted(f"p{n}" for n in range(7))
    assert len(result.valid_items) == 14


def test_backend_failure_keeps_cart_and_marks_failed(api):
    api.add_product(make_product("p1"))
    store = CartStore(items=[CartItem(product=make_product("p1"), size="M", quantity=1)])
    api.fail_products = True

    with pytest.raises(SanitizationError):
        run(CartSanitizer(api).sanitize(store))

    assert store.get_item_count("p1", "M") == 1
    assert store.is_sanitizing is False
    assert store.validation_state == ValidationState.FAILED
    assert not store.can_checkout()

    # Retry succeeds once the backend is back
    api.fail_products = False
    run(CartSanitizer(api).sanitize(store))
    assert store.can_checkout()


def test_empty_cart_needs_no_backend(api):
    store = CartStore()

    result = run(CartSanitizer(api).sanitize(store))

    assert result.valid_items == []
    assert result.unavailable_items == []
    assert api.product_calls == []
    assert api.validation_calls == []


def test_classify_valid_line():
    product = make_product("p1", stock={"M": 3})
    item = CartItem(product=product, size="M", quantity=3)

    assert classify_item(item, product) is None


def test_partition_uses_product_lookup():
    item = CartItem(product=make_product("p1"), size="L", quantity=1)

    valid, unavailable = partition_items([item], {"p1": make_product("p1", stock={"L": 0})})

    assert valid == []
    assert unavailable[0].reason == UnavailableReason.SIZE_OUT_OF_STOCK


def test_whole_cart_is_checked_in_one_call(api):
    items = []
    for n in range(4):
        api.add_product(make_product(f"p{n}"))
        items.append(CartItem(product=make_product(f"p{n}"), size="M", quantity=1))
    store = CartStore(items=items)

    run(CartSanitizer(api, batch_size=2).sanitize(store))

    assert api.validation_calls == [[item.key for item in items]]
    assert api.product_calls == []
    assert store.can_checkout()


def test_valid_lines_take_current_stock(api):
    api.add_product(make_product("p1", stock={"M": 3}))
    store = CartStore(items=[CartItem(product=make_product("p1", stock={"M": 10}), size="M", quantity=2)])

    result = run(CartSanitizer(api).sanitize(store))

    assert result.valid_items[0].product.stock_for("M") == 3
    assert store.get_item("p1", "M").product.stock_for("M") == 3
    assert store.update_quantity("p1", "M", 8).quantity == 3


def test_fallback_lookup_also_refreshes_products(api):
    api.cart_validation_supported = False
    api.add_product(make_product("p1", base_price="120", stock={"M": 3}))
    store = CartStore(items=[CartItem(product=make_product("p1", stock={"M": 10}), size="M", quantity=2)])

    run(CartSanitizer(api).sanitize(store))

    item = store.get_item("p1", "M")
    assert item.quantity == 2
    assert item.product.base_price == Decimal("120")
    assert item.product.stock_for("M") == 3


def test_price_changed_line_stays_valid():
    item = CartItem(product=make_product("p1"), size="M", quantity=1)
    validation = CartValidation(invalid=[CartLineValidation(
        product_id="p1",
        size="M",
        status=CartLineStatus.PRICE_CHANGED,
        message="Price has changed",
        current_stock=4,
        current_base_price=Decimal("120"),
    )])

    valid, unavailable = partition_validation([item], validation)

    assert unavailable == []
    assert valid[0].product.base_price == Decimal("120")
    assert valid[0].quantity == 1


def test_unreported_line_is_valid_as_is():
    item = CartItem(product=make_product("p1"), size="M", quantity=1)

    valid, unavailable = partition_validation([item], CartValidation())

    assert valid == [item]
    assert unavailable == []


def test_unexpected_error_does_not_leave_cart_validated(api):
    api.add_product(make_product("p1"))
    store = CartStore(items=[CartItem(product=make_product("p1"), size="M", quantity=1)])
    run(CartSanitizer(api).sanitize(store))
    assert store.can_checkout()

    async def broken(items):
        raise ValueError("unexpected payload")

    api.validate_cart = broken

    with pytest.raises(ValueError):
        run(CartSanitizer(api).sanitize(store))

    assert store.validation_state == ValidationState.FAILED
    assert store.is_sanitizing is False
    assert not store.can_checkout()


def test_malformed_product_payload_fails_sanitize():
    payloads = {"p1": {"id": "p1", "basePrice": 100, "stockBySize": {"M": 5}}}

    def handler(request):
        if request.url.path == "/api/cart/validate":
            return httpx.Response(404, json={"success": False, "error": "Not found"})
        return httpx.Response(200, json={"success": True, "data": payloads["p1"]})

    store = CartStore(items=[CartItem(product=make_product("p1"), size="M", quantity=1)])

    async def scenario():
        client = StorefrontAPIClient(
            base_url="http://backend.test",
            transport=httpx.MockTransport(handler),
        )
        sanitizer = CartSanitizer(client)
        try:
            await sanitizer.sanitize(store)
            assert store.can_checkout()

            payloads["p1"] = {"title": "no id"}
            await sanitizer.sanitize(store)
        finally:
            await client.close()

    with pytest.raises(SanitizationError):
        run(scenario())

    assert store.validation_state == ValidationState.FAILED
    assert not store.can_checkout()
    assert store.get_item_count("p1", "M") == 1
