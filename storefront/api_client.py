"""
Backend API Client

HTTP client for the storefront backend: products, combos, coupons,
cart validation, checkout calculation, orders and payment-gateway
orders. The backend answers with {"success": bool, "data": ..., "error": ...}
envelopes.
"""

import logging
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from storefront.config import Config
from storefront.exceptions import ProductNotFoundError, RemoteAPIError
from storefront.models import (
    AppliedCoupon,
    CartItem,
    CartValidation,
    CheckoutCalculation,
    CheckoutItem,
    ComboOffer,
    OrderConfirmation,
    PaymentVerification,
    Product,
    ShippingAddress,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CouponRejected(Exception):
    """The backend answered but refused the coupon"""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class StorefrontAPIClient:
    """
    Async client for the storefront backend.

    Every transport failure or error status is raised as RemoteAPIError so
    callers deal with a single remote-failure type.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the backend API
            token: Bearer token sent with every request
            timeout: Request timeout in seconds
            transport: Custom httpx transport (used by tests)
        """
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.token = token if token is not None else Config.API_TOKEN
        self._http_client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or Config.API_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client"""
        await self._http_client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method=method,
                url=path,
                headers=self._headers(),
                json=body,
                params=params,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Request failed: {method} {path} - {type(e).__name__}: {e}")
            raise RemoteAPIError(f"Backend unreachable: {e}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            return payload.get("error") or payload.get("message") or f"HTTP {response.status_code}"
        return f"HTTP {response.status_code}"

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Make a request and unwrap the data envelope"""
        response = await self._send(method, path, body=body, params=params)

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"Request failed: {response.status_code} - {message}")
            raise RemoteAPIError(message, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError:
            raise RemoteAPIError("Backend returned invalid JSON", status_code=response.status_code)

        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, what: str) -> ModelT:
        """Validate a backend payload; a malformed one is a remote failure"""
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Backend returned an invalid {what}: {e.error_count()} error(s)")
            raise RemoteAPIError(f"Backend returned an invalid {what}")

    # ==================== Product APIs ====================

    async def get_product(self, product_id: str) -> Product:
        """Get product details; raises ProductNotFoundError on 404"""
        try:
            data = await self._request("GET", f"/api/products/{product_id}")
        except RemoteAPIError as e:
            if e.status_code == 404:
                raise ProductNotFoundError(product_id)
            raise
        return self._parse(Product, data, "product")

    async def get_active_combos(self) -> List[ComboOffer]:
        data = await self._request("GET", "/api/combos/active")
        if data is not None and not isinstance(data, list):
            raise RemoteAPIError("Backend returned an invalid combo list")
        return [self._parse(ComboOffer, combo, "combo offer") for combo in data or []]

    # ==================== Cart APIs ====================

    async def validate_cart(self, items: Sequence[CartItem]) -> CartValidation:
        """
        Check every cart line against live stock in one request.

        Lines listed under "invalid" carry the reason and current stock;
        valid lines carry current stock and prices.
        """
        body = {
            "items": [
                {"productId": item.product.id, "size": item.size, "quantity": item.quantity}
                for item in items
            ]
        }
        data = await self._request("POST", "/api/cart/validate", body=body)
        return self._parse(CartValidation, data, "cart validation")

    # ==================== Coupon APIs ====================

    async def validate_coupon(self, code: str, cart_value: Decimal) -> AppliedCoupon:
        """
        Validate a coupon against the cart subtotal.

        Raises:
            CouponRejected: the backend refused the code
            RemoteAPIError: the backend could not be reached
        """
        response = await self._send(
            "POST",
            "/api/coupons/validate",
            body={"code": code, "cartValue": float(cart_value)},
        )

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 500:
            raise RemoteAPIError(self._error_message(response), status_code=response.status_code)

        if response.status_code < 400 and payload.get("success") and payload.get("data"):
            return self._parse(AppliedCoupon, payload["data"], "coupon")

        if response.status_code in (401, 403):
            raise RemoteAPIError(self._error_message(response), status_code=response.status_code)

        raise CouponRejected(payload.get("error") or "Invalid coupon code")

    # ==================== Checkout APIs ====================

    async def calculate_checkout(
        self,
        items: List[CheckoutItem],
        pincode: str,
        coupon_code: Optional[str] = None,
    ) -> CheckoutCalculation:
        """Authoritative totals for the given items and destination"""
        body = {
            "items": [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items],
            "pincode": pincode,
        }
        if coupon_code:
            body["couponCode"] = coupon_code

        data = await self._request("POST", "/api/checkout/calculate", body=body)
        return self._parse(CheckoutCalculation, data, "checkout calculation")

    async def create_order(
        self,
        items: List[CheckoutItem],
        shipping_address: ShippingAddress,
        coupon_code: Optional[str] = None,
    ) -> dict:
        """Create the order record; returns the backend's order document"""
        body = {
            "items": [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items],
            "shippingAddress": shipping_address.model_dump(mode="json", by_alias=True, exclude_none=True),
            "pincode": shipping_address.pincode,
            "paymentMethod": "razorpay",
        }
        if coupon_code:
            body["couponCode"] = coupon_code

        return await self._request("POST", "/api/orders", body=body)

    async def create_payment_order(self, order_id: str) -> OrderConfirmation:
        """Open a payment-gateway order for an existing order id"""
        data = await self._request("POST", "/api/payment/create-order", body={"orderId": order_id})
        return OrderConfirmation(
            order_id=order_id,
            payment_order_id=data.get("orderId") or data.get("id"),
            amount=Decimal(str(data.get("amount", 0))),
            currency=data.get("currency", Config.CURRENCY),
            key_id=data.get("keyId") or data.get("key"),
        )

    async def verify_payment(self, verification: PaymentVerification) -> bool:
        """True when the gateway signature checks out"""
        data = await self._request(
            "POST",
            "/api/payment/verify",
            body=verification.model_dump(mode="json", by_alias=True),
        )
        # Success responses carry no data, only the envelope flag
        return data.get("success", True) if isinstance(data, dict) else True
