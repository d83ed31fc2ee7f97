"""Exceptions raised by the shop services.

Each class maps to one HTTP status in main.ERROR_STATUS_CODES.
"""
from typing import Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    pass


class NotFoundError(ShopError):
    """Raised when an entity doesn't exist."""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ConflictError(ShopError):
    """Raised on duplicates or an already-linked record."""

    pass


class ValidationError(ShopError):
    """Raised on malformed or out-of-range input."""

    pass


class AuthenticationError(ShopError):
    pass


class ForbiddenError(ShopError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidStateError(ShopError):
    """Raised on an illegal status transition."""

    def __init__(self, entity: str, current: str, target: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        if target is None:
            msg = f"Cannot cancel {entity.lower()} with status {current}"
        else:
            msg = f"Cannot move {entity.lower()} from {current} to {target}"
        super().__init__(msg)


class InsufficientStockError(ShopError):
    def __init__(self, product_name: str, detail: Optional[str] = None):
        self.product_name = product_name
        msg = f"Insufficient quantity for product {product_name}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class CouponError(ShopError):
    """Raised when a coupon can't be applied."""

    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    MINIMUM_NOT_MET = "MINIMUM_NOT_MET"

    MESSAGES = {
        NOT_FOUND: "Invalid coupon code",
        EXPIRED: "Coupon has expired",
        USAGE_LIMIT_REACHED: "Coupon usage limit reached",
    }

    def __init__(self, reason: str, min_order_amount: Optional[float] = None):
        self.reason = reason
        if reason == self.MINIMUM_NOT_MET:
            msg = f"Minimum order amount for this coupon is {min_order_amount}"
        else:
            msg = self.MESSAGES[reason]
        super().__init__(msg)


class EmptyCartError(ShopError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidAddressError(ShopError):
    def __init__(self, message: str = "Invalid delivery address ID."):
        super().__init__(message)


class MissingAddressError(ShopError):
    def __init__(self):
        super().__init__("Manual address details are required.")


class InvalidDeliveryMethodError(ShopError):
    def __init__(self):
        super().__init__("Invalid delivery method")


class InvalidPaymentMethodError(ShopError):
    def __init__(self, message: str = "Invalid or inactive payment method"):
        super().__init__(message)
