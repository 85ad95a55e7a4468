"""
Custom exceptions for the storefront cart service.
"""
from typing import Optional


class CartException(Exception):
    """Base exception for cart operations"""
    pass


class ValidationError(CartException):
    """Raised when validation fails"""
    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class LimitExceededError(CartException):
    """Raised when cart limits are exceeded"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidCouponError(ValidationError):
    """Raised when a coupon code is malformed or rejected by the backend"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message, field="code")


class OutOfStockError(CartException):
    """Raised when a size has no stock left"""
    def __init__(self, product_id: str, size: str):
        self.product_id = product_id
        self.size = size
        super().__init__(f"Size {size} is out of stock")


class ItemNotFoundError(CartException):
    """Raised when a (product, size) line is not in the cart"""
    def __init__(self, product_id: str, size: str):
        self.product_id = product_id
        self.size = size
        super().__init__(f"Item not found in cart: {product_id} ({size})")


class ProductNotFoundError(CartException):
    """Raised when the backend has no such product"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class CheckoutBlockedError(CartException):
    """Raised when the cart is not eligible for checkout"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class OperationInProgressError(CartException):
    """Raised when the same action is already in flight for a cart"""
    def __init__(self, action: str):
        self.action = action
        super().__init__(f"{action} is already in progress")


class RemoteAPIError(CartException):
    """Raised when the backend API is unreachable or returns an error"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SanitizationError(RemoteAPIError):
    """Raised when cart revalidation could not complete"""
    pass


class OrderCreationError(CartException):
    """Raised when the backend refuses or fails to create an order"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PaymentError(CartException):
    """Raised when the payment step fails after an order exists"""
    def __init__(self, message: str, order_id: Optional[str] = None):
        self.message = message
        self.order_id = order_id
        if order_id:
            message = (
                f"{message}. Your order {order_id} was created; check your order "
                "history or contact support before paying again."
            )
        super().__init__(message)


class StorageConnectionError(CartException):
    """Raised when the Redis connection fails"""
    pass
