"""
In-memory cart store for one shopping session.

Holds line items keyed by (product id, size), the sanitizer's
unavailable-item flags and the combo offers used for price previews. All
operations are synchronous; persistence is handled by CartService through
to_snapshot()/from_snapshot().
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from storefront.combos import calculate_best_price
from storefront.config import Config
from storefront.exceptions import (
    ItemNotFoundError,
    LimitExceededError,
    OutOfStockError,
    ValidationError,
)
from storefront.models import (
    AppliedCombo,
    CartItem,
    CartSnapshot,
    ComboOffer,
    PricingOption,
    PricingOptionType,
    Product,
    SanitizationResult,
    UnavailableCartItem,
    UnavailableReason,
    ValidationState,
)
from storefront.pricing import get_product_pricing

logger = logging.getLogger(__name__)

CartKey = Tuple[str, str]
Listener = Callable[["CartStore"], None]

ZERO = Decimal("0")


class CartStore:
    """Client-local cart state and its derived totals"""

    def __init__(
        self,
        items: Optional[Sequence[CartItem]] = None,
        combos: Optional[Sequence[ComboOffer]] = None
    ):
        self._items: Dict[CartKey, CartItem] = {}
        self._unavailable: Dict[CartKey, UnavailableCartItem] = {}
        self._combos: List[ComboOffer] = list(combos or [])
        self._listeners: List[Listener] = []
        self._pricing_option: Optional[PricingOption] = None

        self.is_sanitizing: bool = False
        self.validation_state: ValidationState = ValidationState.NOT_VALIDATED
        self.last_sanitized_at: Optional[datetime] = None

        for item in items or []:
            self._items[item.key] = item
        self._refresh_pricing()

    # ==================== Listeners ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback run after every mutation; returns an unsubscribe function"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, invalidate: bool = True) -> None:
        if invalidate:
            self.validation_state = ValidationState.NOT_VALIDATED
        self._refresh_pricing()
        for listener in list(self._listeners):
            listener(self)

    # ==================== Mutations ====================

    def add_item(self, product: Product, size: str, quantity: int = 1) -> CartItem:
        """
        Add a product size to the cart, merging with an existing line.

        The merged quantity is clamped to the stock for that size.

        Raises:
            ValidationError: quantity is not positive
            OutOfStockError: the size has no stock
            LimitExceededError: a new line would exceed MAX_ITEMS_PER_CART
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0", field="quantity")

        cap = product.stock_for(size)
        if cap <= 0:
            raise OutOfStockError(product.id, size)

        key = (product.id, size)
        existing = self._items.get(key)

        if existing is None and len(self._items) >= Config.MAX_ITEMS_PER_CART:
            raise LimitExceededError(
                f"Cart exceeds maximum items {Config.MAX_ITEMS_PER_CART}"
            )

        requested = quantity + (existing.quantity if existing else 0)
        new_quantity = min(requested, cap)
        if new_quantity < requested:
            logger.info(f"Clamped {product.id} ({size}) from {requested} to {new_quantity}")

        item = CartItem(product=product, size=size, quantity=new_quantity)
        self._items[key] = item
        self._changed()
        return item

    def update_quantity(self, product_id: str, size: str, quantity: int) -> Optional[CartItem]:
        """
        Set a line's quantity, clamped to [1, stock for the size].

        A quantity of zero or less removes the line and returns None.
        """
        key = (product_id, size)
        existing = self._items.get(key)
        if existing is None:
            raise ItemNotFoundError(product_id, size)

        if quantity <= 0:
            self.remove_item(product_id, size)
            return None

        cap = max(1, existing.product.stock_for(size))
        item = existing.model_copy(update={"quantity": min(quantity, cap)})
        self._items[key] = item

        flag = self._unavailable.get(key)
        if (
            flag is not None
            and flag.reason == UnavailableReason.INSUFFICIENT_STOCK
            and flag.max_available is not None
            and item.quantity <= flag.max_available
        ):
            del self._unavailable[key]

        self._changed()
        return item

    def remove_item(self, product_id: str, size: str) -> bool:
        """Drop a line and its unavailable flag; returns False when absent"""
        key = (product_id, size)
        removed = self._items.pop(key, None) is not None
        flagged = self._unavailable.pop(key, None) is not None
        if removed or flagged:
            # Removing a line cannot make the rest of the cart invalid
            self._changed(invalidate=False)
        return removed

    def clear_unavailable_item(self, product_id: str, size: str) -> bool:
        return self.remove_item(product_id, size)

    def clear_cart(self) -> None:
        """Empty lines and flags. The applied coupon is not the store's concern."""
        self._items.clear()
        self._unavailable.clear()
        self.last_sanitized_at = None
        self._changed()

    def set_combo_offers(self, combos: Sequence[ComboOffer]) -> None:
        self._combos = list(combos)
        self._refresh_pricing()

    def apply_sanitization(self, result: SanitizationResult) -> None:
        """
        Replace the unavailable set with a fresh sanitization result.

        Valid lines take the product data returned by the check, keeping
        their quantity, so stock clamping and prices follow the backend.
        """
        for checked in result.valid_items:
            current = self._items.get(checked.key)
            if current is not None and current.product != checked.product:
                self._items[checked.key] = current.model_copy(update={"product": checked.product})

        self._unavailable = {
            flag.key: flag for flag in result.unavailable_items if flag.key in self._items
        }
        self.last_sanitized_at = result.sanitized_at
        self.validation_state = ValidationState.VALIDATED
        self._changed(invalidate=False)

    def mark_validation_failed(self) -> None:
        self.validation_state = ValidationState.FAILED

    # ==================== Getters ====================

    @property
    def items(self) -> List[CartItem]:
        return list(self._items.values())

    @property
    def unavailable_items(self) -> List[UnavailableCartItem]:
        return list(self._unavailable.values())

    @property
    def combos(self) -> List[ComboOffer]:
        return list(self._combos)

    def is_empty(self) -> bool:
        return not self._items

    def get_item(self, product_id: str, size: str) -> Optional[CartItem]:
        return self._items.get((product_id, size))

    def get_item_count(self, product_id: str, size: str) -> int:
        item = self._items.get((product_id, size))
        return item.quantity if item else 0

    def get_valid_items(self) -> List[CartItem]:
        return [item for key, item in self._items.items() if key not in self._unavailable]

    def has_unavailable_items(self) -> bool:
        return bool(self._unavailable)

    def get_total_items(self) -> int:
        return sum(item.quantity for item in self._items.values())

    def get_total_price(self) -> Decimal:
        """Individual display-price total over available lines"""
        return sum(
            (get_product_pricing(item.product).display_price * item.quantity
             for item in self.get_valid_items()),
            ZERO
        )

    def _refresh_pricing(self) -> None:
        option = calculate_best_price(self.get_valid_items(), self._combos)
        previous = self._pricing_option

        # Keep the earlier snapshot while the same combo applies with the same numbers
        if (
            previous is not None
            and previous.applied_combo is not None
            and option.applied_combo is not None
            and previous.applied_combo.combo_id == option.applied_combo.combo_id
            and previous.total == option.total
            and previous.savings == option.savings
        ):
            option = option.model_copy(update={"applied_combo": previous.applied_combo})

        self._pricing_option = option

    def get_pricing_option(self) -> PricingOption:
        return self._pricing_option

    def get_applied_combo(self) -> Optional[AppliedCombo]:
        if self._pricing_option.type != PricingOptionType.COMBO:
            return None
        return self._pricing_option.applied_combo

    def get_savings(self) -> Decimal:
        if self._pricing_option.type != PricingOptionType.COMBO:
            return ZERO
        return self._pricing_option.savings

    def can_checkout(self) -> bool:
        return (
            bool(self._items)
            and not self.is_sanitizing
            and not self._unavailable
            and self.validation_state == ValidationState.VALIDATED
        )

    def checkout_blockers(self) -> List[str]:
        """Human-readable reasons checkout is not allowed yet"""
        reasons = []
        if not self._items:
            reasons.append("Cart is empty")
        if self.is_sanitizing:
            reasons.append("Cart is being revalidated")
        if self._unavailable:
            reasons.append("Remove unavailable items before checkout")
        if self._items and self.validation_state == ValidationState.NOT_VALIDATED:
            reasons.append("Cart has not been validated yet")
        if self.validation_state == ValidationState.FAILED:
            reasons.append("Could not validate cart, please retry")
        return reasons

    # ==================== Persistence ====================

    def to_snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            items=self.items,
            unavailable_items=self.unavailable_items,
            validation_state=self.validation_state,
            last_sanitized_at=self.last_sanitized_at
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: CartSnapshot,
        combos: Optional[Sequence[ComboOffer]] = None
    ) -> "CartStore":
        store = cls(combos=combos)
        for item in snapshot.items:
            store._items[item.key] = item
        store._unavailable = {
            flag.key: flag for flag in snapshot.unavailable_items if flag.key in store._items
        }
        store.validation_state = snapshot.validation_state
        store.last_sanitized_at = snapshot.last_sanitized_at
        store._refresh_pricing()
        return store
