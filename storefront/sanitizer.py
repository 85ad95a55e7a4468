"""
Cart sanitizer: revalidates cart lines against live product stock before
checkout.

The whole cart is checked with one call to the backend's cart validation
endpoint. Backends without that endpoint are handled by fetching each
distinct product, in concurrent batches.

Lines whose size is short of the requested quantity are flagged
INSUFFICIENT_STOCK with max_available set; quantities are never clamped
here. The customer lowers the quantity or removes the line. Lines that
pass carry refreshed product data so later clamping uses current stock.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from storefront.api_client import StorefrontAPIClient
from storefront.cart_store import CartStore
from storefront.config import Config
from storefront.exceptions import ProductNotFoundError, RemoteAPIError, SanitizationError
from storefront.models import (
    CartItem,
    CartLineStatus,
    CartLineValidation,
    CartValidation,
    Product,
    SanitizationResult,
    UnavailableCartItem,
    UnavailableReason,
)

logger = logging.getLogger(__name__)

# Status codes meaning the backend has no cart validation endpoint
VALIDATION_UNSUPPORTED = (404, 405)

UNAVAILABLE_STATUSES = {
    CartLineStatus.PRODUCT_NOT_FOUND: UnavailableReason.PRODUCT_NOT_FOUND,
    CartLineStatus.SIZE_OUT_OF_STOCK: UnavailableReason.SIZE_OUT_OF_STOCK,
    CartLineStatus.INSUFFICIENT_STOCK: UnavailableReason.INSUFFICIENT_STOCK,
}

Partition = Tuple[List[CartItem], List[UnavailableCartItem]]


def classify_item(item: CartItem, product: Optional[Product]) -> Optional[UnavailableCartItem]:
    """Return an unavailable record for the line, or None when it is valid"""
    product_id, size = item.key

    if product is None:
        return UnavailableCartItem(
            product_id=product_id,
            size=size,
            reason=UnavailableReason.PRODUCT_NOT_FOUND,
            message="This product is no longer available"
        )

    available = product.stock_for(size)
    if available == 0:
        return UnavailableCartItem(
            product_id=product_id,
            size=size,
            reason=UnavailableReason.SIZE_OUT_OF_STOCK,
            message=f"Size {size} is out of stock",
            max_available=0
        )

    if item.quantity > available:
        return UnavailableCartItem(
            product_id=product_id,
            size=size,
            reason=UnavailableReason.INSUFFICIENT_STOCK,
            message=f"Only {available} units available",
            max_available=available
        )

    return None


def partition_items(
    items: Sequence[CartItem],
    products: Dict[str, Optional[Product]]
) -> Partition:
    """Split lines using freshly fetched products; valid lines take the fresh product"""
    valid: List[CartItem] = []
    unavailable: List[UnavailableCartItem] = []
    for item in items:
        product = products.get(item.product.id)
        flag = classify_item(item, product)
        if flag is None:
            valid.append(item.model_copy(update={"product": product}))
        else:
            unavailable.append(flag)
    return valid, unavailable


def refresh_product(item: CartItem, line: CartLineValidation) -> CartItem:
    """Fold the stock and prices reported for a valid line into its product snapshot"""
    update = {}
    if line.current_stock is not None:
        update["stock_by_size"] = {**item.product.stock_by_size, item.size: line.current_stock}
    if line.current_base_price is not None:
        update["base_price"] = line.current_base_price
    if line.current_price is not None:
        update["price"] = line.current_price
    if not update:
        return item
    return item.model_copy(update={"product": item.product.model_copy(update=update)})


def _flag_from_line(line: CartLineValidation, reason: UnavailableReason) -> UnavailableCartItem:
    if reason == UnavailableReason.SIZE_OUT_OF_STOCK:
        max_available = 0
    elif reason == UnavailableReason.INSUFFICIENT_STOCK:
        max_available = line.current_stock
    else:
        max_available = None

    return UnavailableCartItem(
        product_id=line.product_id,
        size=line.size,
        reason=reason,
        message=line.message or "Item no longer available",
        max_available=max_available
    )


def partition_validation(items: Sequence[CartItem], validation: CartValidation) -> Partition:
    """
    Split lines using the cart validation response.

    A line is unavailable only when the backend lists it as invalid with an
    availability status; every other line is valid.
    """
    invalid = {(line.product_id, line.size): line for line in validation.invalid}
    reported = {(line.product_id, line.size): line for line in validation.valid}

    valid: List[CartItem] = []
    unavailable: List[UnavailableCartItem] = []
    for item in items:
        line = invalid.get(item.key)
        reason = UNAVAILABLE_STATUSES.get(line.status) if line else None
        if reason is not None:
            unavailable.append(_flag_from_line(line, reason))
            continue
        line = reported.get(item.key) or line
        valid.append(refresh_product(item, line) if line else item)
    return valid, unavailable


class CartSanitizer:
    """Revalidates a CartStore against the backend"""

    def __init__(self, api_client: StorefrontAPIClient, batch_size: Optional[int] = None):
        self.api_client = api_client
        self.batch_size = max(1, batch_size or Config.SANITIZE_BATCH_SIZE)

    async def _fetch_one(self, product_id: str) -> Optional[Product]:
        try:
            return await self.api_client.get_product(product_id)
        except ProductNotFoundError:
            return None

    async def fetch_products(self, product_ids: Sequence[str]) -> Dict[str, Optional[Product]]:
        """
        Fetch products in batches, concurrently within a batch.

        Missing products map to None. Any other failure aborts the whole
        fetch so a partial view never drives the partition.
        """
        products: Dict[str, Optional[Product]] = {}
        for start in range(0, len(product_ids), self.batch_size):
            batch = product_ids[start:start + self.batch_size]
            results = await asyncio.gather(*(self._fetch_one(pid) for pid in batch))
            products.update(zip(batch, results))
        return products

    async def check_items(self, items: Sequence[CartItem]) -> Partition:
        """Partition lines with one validation call, falling back to product lookups"""
        try:
            validation = await self.api_client.validate_cart(items)
        except RemoteAPIError as e:
            if e.status_code not in VALIDATION_UNSUPPORTED:
                raise
            logger.info("Cart validation endpoint unavailable, checking products individually")
        else:
            return partition_validation(items, validation)

        product_ids = list(dict.fromkeys(item.product.id for item in items))
        products = await self.fetch_products(product_ids)
        return partition_items(items, products)

    async def sanitize(self, store: CartStore) -> SanitizationResult:
        """
        Revalidate every line and replace the store's unavailable set.

        Raises:
            SanitizationError: the backend check failed; the store keeps its
                items and previous flags and is marked FAILED for retry
        """
        items = store.items
        now = datetime.now(timezone.utc)

        if not items:
            result = SanitizationResult(sanitized_at=now)
            store.apply_sanitization(result)
            return result

        store.is_sanitizing = True
        try:
            valid, unavailable = await self.check_items(items)
            result = SanitizationResult(
                valid_items=valid,
                unavailable_items=unavailable,
                sanitized_at=now
            )
            store.apply_sanitization(result)
        except RemoteAPIError as e:
            store.mark_validation_failed()
            logger.warning(f"Cart sanitization failed: {e}")
            raise SanitizationError(f"Could not validate cart: {e.message}", status_code=e.status_code)
        except Exception:
            # An earlier VALIDATED state must not outlive a failed check
            store.mark_validation_failed()
            raise
        finally:
            store.is_sanitizing = False

        logger.info(
            f"Cart sanitized: {len(valid)} valid, {len(unavailable)} unavailable"
        )
        return result
