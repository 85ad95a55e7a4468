"""
Pydantic models for products, cart state, pricing, coupons and checkout.

Field names are snake_case in Python and camelCase on the wire, matching
the backend API.
"""
import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

# Decimal internally, plain JSON numbers on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

PINCODE_PATTERN = re.compile(r"^[1-9][0-9]{5}$")
PHONE_PATTERN = re.compile(r"^[6-9][0-9]{9}$")


class APIModel(BaseModel):
    """Base model speaking the backend's camelCase JSON"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"
    NONE = "none"


class Product(APIModel):
    """Pricing- and stock-relevant view of a catalog product"""
    id: str = Field(..., description="Product identifier")
    title: str = Field("", description="Product title")
    base_price: Optional[Money] = Field(None, description="Authoritative admin-set price")
    price: Optional[Money] = Field(None, description="Legacy price field")
    discount_type: DiscountType = Field(DiscountType.NONE, description="Discount kind")
    discount_value: Money = Field(Decimal("0"), description="Percentage or flat amount")
    stock_by_size: Dict[str, int] = Field(default_factory=dict, description="Units available per size")
    in_stock: Optional[bool] = Field(None, description="Cached flag, not authoritative")
    category: Optional[str] = None
    color: Optional[str] = None

    @field_validator("discount_type", mode="before")
    @classmethod
    def default_discount_type(cls, v):
        return DiscountType.NONE if v in (None, "") else v

    @field_validator("discount_value", mode="before")
    @classmethod
    def default_discount_value(cls, v):
        return Decimal("0") if v is None else v

    @field_validator("stock_by_size", mode="before")
    @classmethod
    def default_stock(cls, v):
        return {} if v is None else v

    @property
    def effective_base_price(self) -> Decimal:
        """basePrice when set, else the legacy price, else 0"""
        return self.base_price or self.price or Decimal("0")

    def stock_for(self, size: str) -> int:
        return max(0, int(self.stock_by_size.get(size, 0) or 0))


class PricingBreakdown(APIModel):
    """Customer-visible price derived from a product's base price"""
    model_config = ConfigDict(frozen=True)

    base_price: Money
    discounted_base_price: Money
    display_price: Money
    original_display_price: Money
    discount: Money
    has_discount: bool


class CartItem(APIModel):
    """Cart line, keyed by (product id, size)"""
    product: Product
    size: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product.id, self.size)


class UnavailableReason(str, Enum):
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    SIZE_OUT_OF_STOCK = "SIZE_OUT_OF_STOCK"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class UnavailableCartItem(APIModel):
    """Line flagged by the sanitizer; blocks checkout until repaired"""
    product_id: str
    size: str
    reason: UnavailableReason
    message: str
    max_available: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product_id, self.size)


class ValidationState(str, Enum):
    NOT_VALIDATED = "not_validated"
    VALIDATED = "validated"
    FAILED = "failed"


class ComboType(str, Enum):
    QUANTITY_BASED = "quantity_based"


class ComboOffer(APIModel):
    """Quantity-based promotional price"""
    id: str
    name: str
    type: ComboType = ComboType.QUANTITY_BASED
    minimum_quantity: int = Field(..., gt=0)
    combo_price: Money = Field(..., ge=0)
    eligible_products: Optional[List[str]] = None
    eligible_categories: Optional[List[str]] = None
    active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AppliedCombo(APIModel):
    """Snapshot of a combo taken when it beat individual pricing"""
    model_config = ConfigDict(frozen=True)

    combo_id: str
    combo_name: str
    combo_price: Money
    original_price: Money
    savings: Money
    item_count: int
    applied_at: datetime


class PricingOptionType(str, Enum):
    INDIVIDUAL = "individual"
    COMBO = "combo"


class PricingOption(APIModel):
    type: PricingOptionType
    total: Money
    savings: Money
    applied_combo: Optional[AppliedCombo] = None
    breakdown: Optional[str] = None


class AppliedCoupon(APIModel):
    """Coupon validated by the backend, kept for the cart -> checkout trip"""
    code: str
    discount: Money


class CartLineStatus(str, Enum):
    VALID = "VALID"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    SIZE_OUT_OF_STOCK = "SIZE_OUT_OF_STOCK"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRICE_CHANGED = "PRICE_CHANGED"


class CartLineValidation(APIModel):
    """Backend verdict for one cart line"""
    product_id: str
    size: str
    status: CartLineStatus
    message: Optional[str] = None
    current_stock: Optional[int] = None
    requested_quantity: Optional[int] = None
    current_price: Optional[Money] = None
    current_base_price: Optional[Money] = None


class CartValidation(APIModel):
    """Response of the whole-cart validation endpoint"""
    valid: List[CartLineValidation] = Field(default_factory=list)
    invalid: List[CartLineValidation] = Field(default_factory=list)


class SanitizationResult(APIModel):
    valid_items: List[CartItem] = Field(default_factory=list)
    unavailable_items: List[UnavailableCartItem] = Field(default_factory=list)
    sanitized_at: datetime


class CartSnapshot(APIModel):
    """Persisted form of a cart store"""
    items: List[CartItem] = Field(default_factory=list)
    unavailable_items: List[UnavailableCartItem] = Field(default_factory=list)
    validation_state: ValidationState = ValidationState.NOT_VALIDATED
    last_sanitized_at: Optional[datetime] = None


class ShippingTier(str, Enum):
    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"


class ShippingQuote(APIModel):
    pincode: str
    tier: ShippingTier
    shipping_fee: Money
    shipping_label: str
    estimated_days: str
    is_serviceable: bool = True


class ShippingAddress(APIModel):
    """Delivery address; field errors surface inline"""
    name: str = Field(..., min_length=2, max_length=100)
    phone: str
    line1: str = Field(..., min_length=3, max_length=200)
    line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    pincode: str

    @field_validator("name", "line1", "city", "state", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v)
        if len(digits) == 12 and digits.startswith("91"):
            digits = digits[2:]
        if not PHONE_PATTERN.match(digits):
            raise ValueError("Phone number must be a valid 10-digit mobile number")
        return digits

    @field_validator("pincode")
    @classmethod
    def validate_pincode(cls, v: str) -> str:
        v = re.sub(r"\s", "", v)
        if not PINCODE_PATTERN.match(v):
            raise ValueError("Pincode must be 6 digits and cannot start with 0")
        return v


class CheckoutItem(APIModel):
    product_id: str
    size: str
    color: Optional[str] = None
    quantity: int = Field(..., gt=0)


class CheckoutCalculatedItem(APIModel):
    product_id: str
    title: str = ""
    size: str
    color: Optional[str] = None
    display_price: Money
    quantity: int
    line_total: Money


class CheckoutCalculation(APIModel):
    """Authoritative totals returned by the backend"""
    items: List[CheckoutCalculatedItem] = Field(default_factory=list)
    subtotal: Money
    shipping_fee: Money
    shipping_label: str
    discount: Money = Decimal("0")
    discount_label: Optional[str] = None
    final_total: Money
    is_tier1: bool = False
    coupon_code: Optional[str] = None
    coupon_error: Optional[str] = None


class CheckoutPreview(APIModel):
    """Instant client-side estimate shown before the backend answers"""
    subtotal: Money
    combo_savings: Money
    coupon_discount: Money
    shipping: Optional[ShippingQuote] = None
    estimated_total: Money
    applied_combo: Optional[AppliedCombo] = None
    coupon_code: Optional[str] = None


class OrderConfirmation(APIModel):
    order_id: str
    payment_order_id: str
    amount: Money
    currency: str
    key_id: Optional[str] = None


class PaymentVerification(APIModel):
    order_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


# Request/response bodies for the HTTP surface

class AddItemRequest(APIModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    quantity: int = Field(1, gt=0)


class UpdateQuantityRequest(APIModel):
    quantity: int


class ApplyCouponRequest(APIModel):
    code: str


class CalculateCheckoutRequest(APIModel):
    pincode: str


class PreviewCheckoutRequest(APIModel):
    pincode: Optional[str] = None


class PlaceOrderRequest(APIModel):
    shipping_address: ShippingAddress


class CartResponse(APIModel):
    cart_id: str
    items: List[CartItem] = Field(default_factory=list)
    unavailable_items: List[UnavailableCartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: Money = Decimal("0")
    pricing_option: Optional[PricingOption] = None
    savings: Money = Decimal("0")
    applied_coupon: Optional[AppliedCoupon] = None
    is_sanitizing: bool = False
    validation_state: ValidationState = ValidationState.NOT_VALIDATED
    can_checkout: bool = False
