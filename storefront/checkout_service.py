"""
Checkout service: local price preview, authoritative calculation, order
placement and payment confirmation.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from storefront.api_client import StorefrontAPIClient
from storefront.cart_service import CartService
from storefront.cart_store import CartStore
from storefront.coupon_service import CouponService
from storefront.exceptions import (
    CheckoutBlockedError,
    OperationInProgressError,
    OrderCreationError,
    PaymentError,
    RemoteAPIError,
)
from storefront.inflight import InFlightRegistry
from storefront.models import (
    AppliedCoupon,
    CheckoutCalculation,
    CheckoutItem,
    CheckoutPreview,
    OrderConfirmation,
    PaymentVerification,
    ShippingAddress,
)
from storefront.shipping import quote_shipping, validate_pincode

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_checkout_items(store: CartStore) -> List[CheckoutItem]:
    return [
        CheckoutItem(
            product_id=item.product.id,
            size=item.size,
            color=item.product.color,
            quantity=item.quantity
        )
        for item in store.get_valid_items()
    ]


class CheckoutService:
    """Service for checkout operations"""

    def __init__(
        self,
        cart_service: CartService,
        coupon_service: CouponService,
        api_client: StorefrontAPIClient,
        inflight: Optional[InFlightRegistry] = None
    ):
        self.cart_service = cart_service
        self.coupon_service = coupon_service
        self.api_client = api_client
        self.inflight = inflight or InFlightRegistry()

    def _require_checkout(self, store: CartStore) -> None:
        if not store.can_checkout():
            raise CheckoutBlockedError("; ".join(store.checkout_blockers()))

    def preview(
        self,
        store: CartStore,
        coupon: Optional[AppliedCoupon] = None,
        pincode: Optional[str] = None
    ) -> CheckoutPreview:
        """
        Instant estimate from client-side pricing.

        Never used for the actual charge; calculate() is authoritative.
        """
        subtotal = store.get_total_price()
        savings = store.get_savings()
        coupon_discount = coupon.discount if coupon else ZERO
        shipping = quote_shipping(pincode, subtotal - savings) if pincode else None
        shipping_fee = shipping.shipping_fee if shipping else ZERO

        return CheckoutPreview(
            subtotal=subtotal,
            combo_savings=savings,
            coupon_discount=coupon_discount,
            shipping=shipping,
            estimated_total=max(ZERO, subtotal - savings - coupon_discount + shipping_fee),
            applied_combo=store.get_applied_combo(),
            coupon_code=coupon.code if coupon else None
        )

    async def calculate(
        self,
        store: CartStore,
        pincode: str,
        coupon_code: Optional[str] = None
    ) -> CheckoutCalculation:
        """
        Ask the backend for the authoritative totals.

        Raises:
            ValidationError: malformed pincode
            CheckoutBlockedError: cart not eligible for checkout
            RemoteAPIError: backend failure
        """
        cleaned = validate_pincode(pincode)
        self._require_checkout(store)
        return await self.api_client.calculate_checkout(
            to_checkout_items(store), cleaned, coupon_code
        )

    async def place_order(
        self,
        cart_id: str,
        store: CartStore,
        shipping_address: ShippingAddress
    ) -> OrderConfirmation:
        """
        Create the order, then open a payment-gateway order for it.

        Raises:
            OperationInProgressError: an order is already being placed for this cart
            CheckoutBlockedError: cart not eligible for checkout
            OrderCreationError: the order was not created; cart untouched
            PaymentError: the order exists but the payment order could not be opened
        """
        async with self.inflight.claim(cart_id, "place_order"):
            if self.inflight.is_active(cart_id, "sanitize"):
                store.is_sanitizing = True
            self._require_checkout(store)

            coupon = self.coupon_service.get(cart_id)
            try:
                order = await self.api_client.create_order(
                    to_checkout_items(store),
                    shipping_address,
                    coupon.code if coupon else None
                )
            except RemoteAPIError as e:
                logger.error(f"Order creation failed: {e}")
                raise OrderCreationError(f"Could not create order: {e.message}")

            order_id = order.get("id") if isinstance(order, dict) else None
            if not order_id:
                raise OrderCreationError("Backend did not return an order id")

            try:
                confirmation = await self.api_client.create_payment_order(order_id)
            except RemoteAPIError as e:
                logger.error(f"Payment order creation failed for order {order_id}: {e}")
                raise PaymentError("Could not start payment", order_id=order_id)

        logger.info(f"Order {order_id} created, awaiting payment of {confirmation.amount}")
        return confirmation

    async def confirm_payment(self, cart_id: str, verification: PaymentVerification) -> None:
        """
        Verify the gateway payment; on success the cart and coupon are cleared.

        Raises:
            OperationInProgressError: a verification or a sanitize is running for this cart
            PaymentError: verification failed; the cart is kept
        """
        async with self.inflight.claim(cart_id, "confirm_payment"):
            if self.inflight.is_active(cart_id, "sanitize"):
                raise OperationInProgressError("sanitize")
            try:
                verified = await self.api_client.verify_payment(verification)
            except RemoteAPIError as e:
                logger.warning(f"Payment verification failed for order {verification.order_id}: {e}")
                raise PaymentError("Payment verification failed", order_id=verification.order_id)

            if not verified:
                raise PaymentError("Payment verification failed", order_id=verification.order_id)

            await self.cart_service.clear_cart(cart_id)
            self.coupon_service.remove(cart_id)

        logger.info(f"Payment verified for order {verification.order_id}")
