"""
FastAPI application for the storefront cart session service.
"""
import logging
import time
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.api_client import StorefrontAPIClient
from storefront.cart_service import CartService
from storefront.cart_store import CartStore
from storefront.checkout_service import CheckoutService
from storefront.config import Config
from storefront.coupon_service import CouponService
from storefront.exceptions import (
    CartException,
    CheckoutBlockedError,
    ItemNotFoundError,
    LimitExceededError,
    OperationInProgressError,
    OrderCreationError,
    OutOfStockError,
    PaymentError,
    ProductNotFoundError,
    RemoteAPIError,
    StorageConnectionError,
    ValidationError,
)
from storefront.inflight import InFlightRegistry
from storefront.middleware import RequestLoggingMiddleware
from storefront.models import (
    AddItemRequest,
    AppliedCoupon,
    ApplyCouponRequest,
    CalculateCheckoutRequest,
    CartResponse,
    CheckoutCalculation,
    CheckoutPreview,
    OrderConfirmation,
    PaymentVerification,
    PlaceOrderRequest,
    PreviewCheckoutRequest,
    SanitizationResult,
    ShippingQuote,
    UpdateQuantityRequest,
)
from storefront.shipping import quote_shipping
from storefront.storage import KeyValueStorage, create_storage

logger = logging.getLogger(__name__)


class Services:
    """Wires storage, backend client and services together"""

    def __init__(self, storage: KeyValueStorage, api_client: StorefrontAPIClient):
        self.storage = storage
        self.api_client = api_client
        self.inflight = InFlightRegistry()
        self.coupon_service = CouponService(api_client, storage, self.inflight)
        self.cart_service = CartService(storage, api_client, self.coupon_service, self.inflight)
        self.checkout_service = CheckoutService(
            self.cart_service, self.coupon_service, api_client, self.inflight
        )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the service container (singleton)"""
    global _services
    if _services is None:
        _services = Services(create_storage(), StorefrontAPIClient())
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{Config.PROJECT_NAME} starting, backend {Config.API_BASE_URL}")
    yield
    if _services is not None:
        await _services.api_client.close()
    logger.info(f"{Config.PROJECT_NAME} shutting down")


app = FastAPI(
    title="Storefront Cart API",
    description="Cart, pricing preview and checkout session service",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)


def cart_id_header(
    cart_id: str = Header(..., alias="X-Cart-ID", description="Cart identifier")
) -> str:
    if not cart_id or not cart_id.strip():
        raise HTTPException(status_code=400, detail="Cart ID is required")
    return cart_id.strip()


def build_cart_response(
    cart_id: str,
    store: CartStore,
    coupon: Optional[AppliedCoupon]
) -> CartResponse:
    return CartResponse(
        cart_id=cart_id,
        items=store.items,
        unavailable_items=store.unavailable_items,
        total_items=store.get_total_items(),
        total_price=store.get_total_price(),
        pricing_option=store.get_pricing_option(),
        savings=store.get_savings(),
        applied_coupon=coupon,
        is_sanitizing=store.is_sanitizing,
        validation_state=store.validation_state,
        can_checkout=store.can_checkout()
    )


async def _cart_response(services: Services, cart_id: str) -> CartResponse:
    store = await services.cart_service.load(cart_id)
    return build_cart_response(cart_id, store, services.coupon_service.get(cart_id))


@app.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running; reports storage status.
    """
    storage_status = "healthy"
    latency_ms = None

    try:
        ping_start = time.time()
        healthy = services.storage.ping()
        latency_ms = round((time.time() - ping_start) * 1000, 2)
        if not healthy:
            storage_status = "unhealthy"
    except StorageConnectionError:
        storage_status = "unhealthy"

    return {
        "status": "healthy",
        "service": "storefront-cart",
        "storage": {"status": storage_status, "latency_ms": latency_ms},
        "timestamp": time.time()
    }


# Cart endpoints

@app.get("/cart", response_model=CartResponse)
async def get_cart(
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    """Get cart contents, totals and pricing preview. Unknown carts are empty."""
    return await _cart_response(services, cart_id)


@app.post("/cart/items", response_model=CartResponse)
async def add_cart_item(
    request: AddItemRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    """Add a product size; merges with an existing line and clamps to stock."""
    await services.cart_service.add_item(cart_id, request.product_id, request.size, request.quantity)
    return await _cart_response(services, cart_id)


@app.patch("/cart/items/{product_id}/{size}", response_model=CartResponse)
async def update_cart_item(
    product_id: str,
    size: str,
    request: UpdateQuantityRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    await services.cart_service.update_quantity(cart_id, product_id, size, request.quantity)
    return await _cart_response(services, cart_id)


@app.delete("/cart/items/{product_id}/{size}", response_model=CartResponse)
async def remove_cart_item(
    product_id: str,
    size: str,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    removed = await services.cart_service.remove_item(cart_id, product_id, size)
    if not removed:
        raise ItemNotFoundError(product_id, size)
    return await _cart_response(services, cart_id)


@app.delete("/cart", response_model=CartResponse)
async def clear_cart(
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    await services.cart_service.clear_cart(cart_id)
    return await _cart_response(services, cart_id)


@app.post("/cart/sanitize", response_model=SanitizationResult)
async def sanitize_cart(
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    """Revalidate cart lines against live stock."""
    return await services.cart_service.sanitize(cart_id)


@app.post("/cart/coupon", response_model=AppliedCoupon)
async def apply_coupon(
    request: ApplyCouponRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    store = await services.cart_service.load(cart_id)
    return await services.coupon_service.apply(cart_id, store, request.code)


@app.delete("/cart/coupon")
async def remove_coupon(
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    services.coupon_service.remove(cart_id)
    return {"success": True, "message": "Coupon removed"}


# Shipping and checkout endpoints

@app.get("/shipping/check", response_model=ShippingQuote)
async def check_pincode(
    pincode: str = Query(..., description="Destination pincode"),
    subtotal: float = Query(0, ge=0, description="Cart subtotal for the free-shipping threshold")
):
    return quote_shipping(pincode, subtotal=Decimal(str(subtotal)))


@app.post("/checkout/preview", response_model=CheckoutPreview)
async def preview_checkout(
    request: PreviewCheckoutRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    """Instant estimate; not the amount charged."""
    store = await services.cart_service.load(cart_id)
    coupon = services.coupon_service.get(cart_id)
    return services.checkout_service.preview(store, coupon, request.pincode)


@app.post("/checkout/calculate", response_model=CheckoutCalculation)
async def calculate_checkout(
    request: CalculateCheckoutRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    """Authoritative totals from the backend."""
    store = await services.cart_service.load(cart_id)
    coupon = services.coupon_service.get(cart_id)
    return await services.checkout_service.calculate(
        store, request.pincode, coupon.code if coupon else None
    )


@app.post("/checkout/orders", response_model=OrderConfirmation, status_code=201)
async def place_order(
    request: PlaceOrderRequest,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    store = await services.cart_service.load(cart_id)
    return await services.checkout_service.place_order(cart_id, store, request.shipping_address)


@app.post("/checkout/payments/verify")
async def verify_payment(
    request: PaymentVerification,
    cart_id: str = Depends(cart_id_header),
    services: Services = Depends(get_services)
):
    await services.checkout_service.confirm_payment(cart_id, request)
    return {"success": True, "orderId": request.order_id, "message": "Payment verified successfully"}


# Error handlers

def _error(status_code: int, error: str, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": str(exc), **extra}
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return _error(400, "Validation error", exc, field=exc.field)


@app.exception_handler(LimitExceededError)
async def limit_error_handler(request, exc):
    return _error(400, "Limit exceeded", exc)


@app.exception_handler(OutOfStockError)
async def out_of_stock_handler(request, exc: OutOfStockError):
    return _error(409, "Out of stock", exc, productId=exc.product_id, size=exc.size)


@app.exception_handler(ItemNotFoundError)
async def item_not_found_handler(request, exc):
    return _error(404, "Item not found", exc)


@app.exception_handler(ProductNotFoundError)
async def product_not_found_handler(request, exc):
    return _error(404, "Product not found", exc)


@app.exception_handler(CheckoutBlockedError)
async def checkout_blocked_handler(request, exc):
    return _error(409, "Checkout blocked", exc)


@app.exception_handler(OperationInProgressError)
async def in_progress_handler(request, exc):
    return _error(409, "Request already in progress", exc)


@app.exception_handler(OrderCreationError)
async def order_creation_handler(request, exc):
    return _error(502, "Order creation failed", exc)


@app.exception_handler(PaymentError)
async def payment_error_handler(request, exc: PaymentError):
    return _error(402, "Payment failed", exc, orderId=exc.order_id)


@app.exception_handler(RemoteAPIError)
async def remote_error_handler(request, exc):
    return _error(502, "Backend unavailable", exc)


@app.exception_handler(StorageConnectionError)
async def storage_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Cart storage connection failed"}
    )


@app.exception_handler(CartException)
async def cart_error_handler(request, exc):
    logger.error(f"Unhandled cart error: {type(exc).__name__}: {exc}", exc_info=True)
    return _error(500, "Cart error", exc)


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
