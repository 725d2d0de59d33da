"""Exceptions raised by the storefront services.

Each carries the HTTP status the API answers with; ``storefront.main``
turns them into JSON responses.
"""


class StorefrontError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv["detail"] = self.message
        return rv


class ValidationError(StorefrontError):
    """Malformed or incomplete input; never retried."""

    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class EmptyCartError(ValidationError):
    def __init__(self, message="Your cart is empty"):
        super().__init__(message)


class NotFoundError(StorefrontError):
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class InsufficientStockError(StorefrontError):
    """A cart line asks for more units than the product has in stock."""

    def __init__(self, product_name, requested, available, product_id=None):
        message = f"Insufficient stock for {product_name}. Only {available} available."
        super().__init__(
            message,
            409,
            {"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_name = product_name
        self.requested = requested
        self.available = available


class SignatureVerificationError(StorefrontError):
    def __init__(self, message="Invalid signature"):
        super().__init__(message, 400)


class TransactionConflictError(StorefrontError):
    """Finalization could not commit within its retry budget."""

    def __init__(self, message="Could not finalize order, please retry"):
        super().__init__(message, 503)


class PaymentProviderError(StorefrontError):
    def __init__(self, message="Payment provider unavailable"):
        super().__init__(message, 502)
