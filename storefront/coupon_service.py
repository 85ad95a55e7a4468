"""
Coupon service: validates codes against the backend and keeps the applied
coupon in storage so it survives the trip from cart to checkout.
"""
import logging
import re
from typing import Callable, Optional

from storefront.api_client import CouponRejected, StorefrontAPIClient
from storefront.cart_store import CartStore
from storefront.exceptions import InvalidCouponError
from storefront.inflight import InFlightRegistry
from storefront.models import AppliedCoupon
from storefront.storage import CouponStore, KeyValueStorage

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,20}$")


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CouponService:
    """Apply, read and drop the coupon attached to a cart"""

    def __init__(
        self,
        api_client: StorefrontAPIClient,
        storage: KeyValueStorage,
        inflight: Optional[InFlightRegistry] = None
    ):
        self.api_client = api_client
        self.storage = storage
        self.inflight = inflight or InFlightRegistry()

    def _coupons(self, cart_id: str) -> CouponStore:
        return CouponStore(self.storage, cart_id)

    def get(self, cart_id: str) -> Optional[AppliedCoupon]:
        return self._coupons(cart_id).get()

    async def apply(self, cart_id: str, store: CartStore, code: str) -> AppliedCoupon:
        """
        Validate a code against the cart's subtotal and persist it.

        Raises:
            InvalidCouponError: empty/malformed code, empty cart, or rejected by the backend
            RemoteAPIError: backend unreachable; any previous coupon is kept
            OperationInProgressError: an apply is already running for this cart
        """
        normalized = normalize_code(code)
        if not normalized:
            raise InvalidCouponError("Please enter a coupon code")
        if not COUPON_CODE_PATTERN.match(normalized):
            raise InvalidCouponError("Invalid coupon code format", code=normalized)

        subtotal = store.get_total_price()
        if not store.get_valid_items():
            raise InvalidCouponError("Add items to your cart before applying a coupon", code=normalized)

        async with self.inflight.claim(cart_id, "apply_coupon"):
            try:
                coupon = await self.api_client.validate_coupon(normalized, subtotal)
            except CouponRejected as e:
                raise InvalidCouponError(e.reason, code=normalized)

        self._coupons(cart_id).set(coupon)
        logger.info(f"Coupon {coupon.code} applied, discount {coupon.discount}")
        return coupon

    def remove(self, cart_id: str) -> None:
        self._coupons(cart_id).clear()

    def clear_if_cart_empty(self, cart_id: str, store: CartStore) -> bool:
        """Drop the coupon once the cart has no lines; returns True when one was dropped"""
        if not store.is_empty():
            return False
        coupons = self._coupons(cart_id)
        if coupons.get() is None:
            return False
        coupons.clear()
        logger.info("Cart emptied - cleared applied coupon")
        return True

    def bind(self, cart_id: str, store: CartStore) -> Callable[[], None]:
        """Wire the empty-cart reaction to store changes; returns the unsubscribe function"""
        return store.subscribe(lambda changed: self.clear_if_cart_empty(cart_id, changed))
