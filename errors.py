"""Storefront error taxonomy.

Every error raised by the domain modules derives from ``StorefrontError`` and
carries the HTTP status the API answers with. ``main.py`` turns them into
``{"detail": ...}`` responses, the same shape ``HTTPException`` produces.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Malformed or missing checkout fields."""

    status_code = 400


class SubtotalMismatchError(ValidationError):
    """Submitted subtotal disagrees with the sum of item subtotals."""


class CrossMerchantCartError(StorefrontError):
    """Cart already holds items from another merchant."""

    status_code = 409

    def __init__(self, existing_merchant: str, attempted_merchant: str):
        super().__init__(
            f"Cart already holds items from {existing_merchant}; "
            f"checkout or empty the cart before adding products from {attempted_merchant}"
        )
        self.existing_merchant = existing_merchant
        self.attempted_merchant = attempted_merchant


class MissingMerchantContactError(StorefrontError):
    """Handoff checkout needs a merchant phone number."""

    status_code = 422


class PaymentGatewayError(StorefrontError):
    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class PaymentGatewayTimeoutError(PaymentGatewayError):
    status_code = 504


class UnknownReferenceError(StorefrontError):
    status_code = 404

    def __init__(self, reference_id: str):
        super().__init__(f"Unknown transaction reference: {reference_id}")
        self.reference_id = reference_id


class OrderNotFoundError(StorefrontError):
    status_code = 404


class ProductNotFoundError(StorefrontError):
    status_code = 404


class MerchantNotFoundError(StorefrontError):
    status_code = 404


class NotificationNotFoundError(StorefrontError):
    status_code = 404


class ProductUnavailableError(StorefrontError):
    """Product is out of stock or not published to the marketplace."""

    status_code = 409


class OrderStateError(StorefrontError):
    """Order is already in a terminal state."""

    status_code = 409


class DuplicateCheckoutError(StorefrontError):
    """A checkout with the same reference id or idempotency key was already submitted."""

    status_code = 409


class PartialWriteWarning(UserWarning):
    """Per-buyer index write failed after the global write succeeded."""
