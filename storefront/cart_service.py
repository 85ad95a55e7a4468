"""
Cart service: loads and saves per-session cart stores and runs the
operations that need the backend (product lookup, sanitization).
"""
import hashlib
import logging
import time
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from storefront.api_client import StorefrontAPIClient
from storefront.cart_store import CartStore
from storefront.config import Config
from storefront.coupon_service import CouponService
from storefront.exceptions import OperationInProgressError, RemoteAPIError
from storefront.inflight import InFlightRegistry
from storefront.models import CartItem, CartSnapshot, ComboOffer, SanitizationResult
from storefront.sanitizer import CartSanitizer
from storefront.storage import KeyValueStorage

logger = logging.getLogger(__name__)

COMBO_CACHE_SECONDS = 60


class CartService:
    """Service for cart operations"""

    def __init__(
        self,
        storage: KeyValueStorage,
        api_client: StorefrontAPIClient,
        coupon_service: Optional[CouponService] = None,
        inflight: Optional[InFlightRegistry] = None
    ):
        self.storage = storage
        self.api_client = api_client
        self.coupon_service = coupon_service
        self.inflight = inflight or InFlightRegistry()
        self.sanitizer = CartSanitizer(api_client)
        self._combos: List[ComboOffer] = []
        self._combos_loaded_at: Optional[float] = None

    def _get_cart_key(self, cart_id: str) -> str:
        """Generate storage key for cart"""
        return f"cart:{cart_id}"

    def _hash_cart_id(self, cart_id: str) -> str:
        """Hash cart ID for logging (no PII)"""
        return hashlib.sha256(cart_id.encode()).hexdigest()[:8]

    async def get_combo_offers(self) -> List[ComboOffer]:
        """Active combos, cached briefly; a backend failure falls back to individual pricing"""
        now = time.monotonic()
        if self._combos_loaded_at is not None and now - self._combos_loaded_at < COMBO_CACHE_SECONDS:
            return self._combos

        try:
            self._combos = await self.api_client.get_active_combos()
        except RemoteAPIError as e:
            logger.warning(f"Could not load combo offers, pricing individually: {e}")
            return self._combos
        self._combos_loaded_at = now
        return self._combos

    async def load(self, cart_id: str) -> CartStore:
        """Get the cart store for a session; a missing or unreadable cart starts empty"""
        combos = await self.get_combo_offers()
        raw = self.storage.get(self._get_cart_key(cart_id))

        store = CartStore(combos=combos)
        if raw:
            try:
                store = CartStore.from_snapshot(CartSnapshot.model_validate_json(raw), combos=combos)
            except PydanticValidationError as e:
                logger.warning(f"Discarding unreadable cart {self._hash_cart_id(cart_id)}: {e}")

        store.is_sanitizing = self.inflight.is_active(cart_id, "sanitize")
        if self.coupon_service:
            self.coupon_service.bind(cart_id, store)
        return store

    async def _load_for_edit(self, cart_id: str) -> CartStore:
        """
        Load the store for a mutation.

        Edits are refused while a sanitize runs for the cart, since its save
        would overwrite them. No await follows this check before the save.
        """
        store = await self.load(cart_id)
        if store.is_sanitizing:
            raise OperationInProgressError("sanitize")
        return store

    def save(self, cart_id: str, store: CartStore) -> None:
        """Persist the store, dropping the key once the cart is empty"""
        key = self._get_cart_key(cart_id)
        if store.is_empty():
            self.storage.clear(key)
            return
        self.storage.set(
            key,
            store.to_snapshot().model_dump_json(by_alias=True),
            ttl=Config.CART_TTL_SECONDS
        )

    async def add_item(self, cart_id: str, product_id: str, size: str, quantity: int) -> CartItem:
        """Look the product up and add it; raises ProductNotFoundError for unknown ids"""
        product = await self.api_client.get_product(product_id)
        store = await self._load_for_edit(cart_id)
        item = store.add_item(product, size, quantity)
        self.save(cart_id, store)
        return item

    async def update_quantity(self, cart_id: str, product_id: str, size: str, quantity: int) -> CartStore:
        store = await self._load_for_edit(cart_id)
        store.update_quantity(product_id, size, quantity)
        self.save(cart_id, store)
        return store

    async def remove_item(self, cart_id: str, product_id: str, size: str) -> bool:
        store = await self._load_for_edit(cart_id)
        removed = store.remove_item(product_id, size)
        self.save(cart_id, store)
        return removed

    async def clear_cart(self, cart_id: str) -> None:
        store = await self._load_for_edit(cart_id)
        store.clear_cart()
        self.save(cart_id, store)

    async def sanitize(self, cart_id: str) -> SanitizationResult:
        """
        Revalidate the cart against the backend and persist the outcome.

        A failed revalidation is persisted as FAILED with items untouched,
        then re-raised. A cart whose payment is being confirmed is not
        revalidated, so the confirmation can clear it.
        """
        if self.inflight.is_active(cart_id, "confirm_payment"):
            raise OperationInProgressError("confirm_payment")
        async with self.inflight.claim(cart_id, "sanitize"):
            store = await self.load(cart_id)
            try:
                result = await self.sanitizer.sanitize(store)
            finally:
                self.save(cart_id, store)

        logger.info(
            f"Sanitized cart {self._hash_cart_id(cart_id)}: "
            f"{len(result.unavailable_items)} unavailable"
        )
        return result
