import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from storefront.cart_service import CartService
from storefront.checkout_service import CheckoutService
from storefront.coupon_service import CouponService
from storefront.exceptions import (
    CheckoutBlockedError,
    OperationInProgressError,
    OrderCreationError,
    PaymentError,
    ValidationError,
)
from storefront.inflight import InFlightRegistry
from storefront.models import (
    AppliedCoupon,
    ComboOffer,
    PaymentVerification,
    SanitizationResult,
    ShippingAddress,
)
from tests.fakes import make_product

ADDRESS = ShippingAddress(
    name="Asha Rao",
    phone="+91 98765 43210",
    line1="12 MG Road",
    city="Bengaluru",
    state="Karnataka",
    pincode="560001",
)

VERIFICATION = PaymentVerification(
    order_id="order-1",
    razorpay_order_id="rzp_order_1",
    razorpay_payment_id="pay_1",
    razorpay_signature="sig",
)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def services(api, storage):
    inflight = InFlightRegistry()
    coupons = CouponService(api, storage, inflight)
    carts = CartService(storage, api, coupons, inflight)
    checkout = CheckoutService(carts, coupons, api, inflight)
    return carts, coupons, checkout, inflight


def validated_cart(api, carts, cart_id="cart-1"):
    api.add_product(make_product("p1", base_price="100"))
    run(carts.add_item(cart_id, "p1", "M", 2))
    run(carts.sanitize(cart_id))
    return run(carts.load(cart_id))


def test_preview_combines_combo_coupon_and_shipping(api, services):
    carts, coupons, checkout, _ = services
    api.combos = [ComboOffer(id="c1", name="Any 2 for 300", minimum_quantity=2, combo_price=Decimal("300"))]
    store = validated_cart(api, carts)

    preview = checkout.preview(store, AppliedCoupon(code="SAVE50", discount=Decimal("50")), "110001")

    assert preview.subtotal == Decimal("358")
    assert preview.combo_savings == Decimal("58")
    assert preview.coupon_discount == Decimal("50")
    assert preview.shipping.shipping_fee == Decimal("60")
    assert preview.estimated_total == Decimal("310")
    assert preview.applied_combo.combo_id == "c1"


def test_preview_total_never_negative(api, services):
    carts, _, checkout, _ = services
    store = validated_cart(api, carts)

    preview = checkout.preview(store, AppliedCoupon(code="BIG", discount=Decimal("1000")))

    assert preview.estimated_total == 0
    assert preview.shipping is None


def test_calculate_validates_pincode_first(api, services):
    carts, _, checkout, _ = services
    store = validated_cart(api, carts)

    with pytest.raises(ValidationError):
        run(checkout.calculate(store, "0123"))


def test_calculate_requires_validated_cart(api, services):
    carts, _, checkout, _ = services
    api.add_product(make_product("p1"))
    run(carts.add_item("cart-1", "p1", "M", 1))
    store = run(carts.load("cart-1"))

    with pytest.raises(CheckoutBlockedError):
        run(checkout.calculate(store, "560001"))


def test_calculate_sends_valid_items(api, services):
    carts, _, checkout, _ = services
    api.coupons["SAVE50"] = Decimal("50")
    store = validated_cart(api, carts)

    calculation = run(checkout.calculate(store, "560001", "SAVE50"))

    assert calculation.subtotal == Decimal("358")
    assert calculation.final_total == Decimal("308")


def test_unavailable_items_block_orders(api, services):
    carts, _, checkout, _ = services
    store = validated_cart(api, carts)
    store.apply_sanitization(SanitizationResult(
        unavailable_items=[{
            "productId": "p1",
            "size": "M",
            "reason": "SIZE_OUT_OF_STOCK",
            "message": "Size M is out of stock",
        }],
        sanitized_at=datetime.now(timezone.utc),
    ))

    with pytest.raises(CheckoutBlockedError):
        run(checkout.place_order("cart-1", store, ADDRESS))
    assert api.orders == []


def test_place_order_returns_payment_order(api, services):
    carts, coupons, checkout, _ = services
    api.coupons["SAVE50"] = Decimal("50")
    store = validated_cart(api, carts)
    run(coupons.apply("cart-1", store, "SAVE50"))

    confirmation = run(checkout.place_order("cart-1", store, ADDRESS))

    assert confirmation.order_id == "order-1"
    assert confirmation.payment_order_id == "rzp_order_1"
    assert api.orders[0]["couponCode"] == "SAVE50"
    # Cart is kept until payment is verified
    assert not run(carts.load("cart-1")).is_empty()


def test_order_failure_leaves_cart(api, services):
    carts, _, checkout, _ = services
    store = validated_cart(api, carts)
    api.fail_orders = True

    with pytest.raises(OrderCreationError):
        run(checkout.place_order("cart-1", store, ADDRESS))

    assert run(carts.load("cart-1")).get_item_count("p1", "M") == 2


def test_payment_order_failure_reports_order_id(api, services):
    carts, _, checkout, _ = services
    store = validated_cart(api, carts)
    api.fail_payment_order = True

    with pytest.raises(PaymentError) as exc_info:
        run(checkout.place_order("cart-1", store, ADDRESS))

    assert exc_info.value.order_id == "order-1"
    assert "order-1" in str(exc_info.value)


def test_duplicate_order_submission_is_refused(api, services):
    carts, _, checkout, inflight = services
    store = validated_cart(api, carts)

    async def scenario():
        async with inflight.claim("cart-1", "place_order"):
            await checkout.place_order("cart-1", store, ADDRESS)

    with pytest.raises(OperationInProgressError):
        run(scenario())
    assert api.orders == []


def test_order_blocked_while_sanitizing(api, services):
    carts, _, checkout, inflight = services
    store = validated_cart(api, carts)

    async def scenario():
        async with inflight.claim("cart-1", "sanitize"):
            await checkout.place_order("cart-1", store, ADDRESS)

    with pytest.raises(CheckoutBlockedError):
        run(scenario())


def test_confirm_payment_clears_cart_and_coupon(api, services):
    carts, coupons, checkout, _ = services
    api.coupons["SAVE50"] = Decimal("50")
    store = validated_cart(api, carts)
    run(coupons.apply("cart-1", store, "SAVE50"))

    run(checkout.confirm_payment("cart-1", VERIFICATION))

    assert run(carts.load("cart-1")).is_empty()
    assert coupons.get("cart-1") is None


def test_failed_verification_keeps_cart(api, services):
    carts, _, checkout, _ = services
    validated_cart(api, carts)
    api.payment_verified = False

    with pytest.raises(PaymentError):
        run(checkout.confirm_payment("cart-1", VERIFICATION))

    assert not run(carts.load("cart-1")).is_empty()


def test_confirm_payment_waits_for_sanitize(api, services):
    carts, _, checkout, inflight = services
    validated_cart(api, carts)

    async def scenario():
        async with inflight.claim("cart-1", "sanitize"):
            await checkout.confirm_payment("cart-1", VERIFICATION)

    with pytest.raises(OperationInProgressError):
        run(scenario())
    assert not run(carts.load("cart-1")).is_empty()
