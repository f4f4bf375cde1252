"""
Checkout and order lifecycle errors.

Every error carries the HTTP status it is surfaced with and a message that is
safe to show to the customer.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    status_code = 500
    default_message = "An error occurred while processing your request."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CheckoutError):
    """Local, recoverable: the checkout step does not advance."""
    status_code = 400
    default_message = "Invalid request"


class NotFound(CheckoutError):
    status_code = 404
    default_message = "Not found"


class GatewayError(CheckoutError):
    """Payment order creation or authorization failed; retry with a fresh intent."""
    status_code = 502
    default_message = "Failed to initialize payment. Please try again."


class PaymentCancelled(GatewayError):
    status_code = 409
    default_message = "Payment cancelled"


class VerificationFailure(CheckoutError):
    status_code = 402
    default_message = "Payment verification failed"


class PersistenceError(CheckoutError):
    status_code = 503
    default_message = "Server error. Please try again later."


class CatalogUnavailable(PersistenceError):
    default_message = "Failed to load product details"

    def __init__(self, message: Optional[str] = None, partial: Optional[list] = None):
        super().__init__(message)
        # line items as known before the failed lookup
        self.partial = partial or []


class InvalidStateTransition(CheckoutError):
    status_code = 409

    def __init__(self, current: Any, requested: Any = None, message: Optional[str] = None):
        self.current = getattr(current, "value", current)
        self.requested = getattr(requested, "value", requested)
        if message is None:
            if self.requested is not None:
                message = f"Cannot move from '{self.current}' to '{self.requested}'."
            else:
                message = f"Not allowed while in state '{self.current}'."
        super().__init__(message)
