"""Error taxonomy for the order fulfillment core.

Verification errors are permanent rejections (400). Configuration and
persistence errors surface as 500 so the provider retries delivery.
DuplicateSessionIgnored and UnresolvedProductReference are outcomes, not
failures: the first acknowledges with 200, the second is logged per line.
"""

from __future__ import annotations


class StorefrontError(Exception):
    """Base exception for all storefront errors."""


class ConfigurationError(StorefrontError):
    """Raised when a required server-side setting is missing."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"Required setting not configured: {setting}")


class VerificationError(StorefrontError):
    """Base for webhook verification failures."""


class MissingSignature(VerificationError):
    """Raised when the request carries no signature header."""

    def __init__(self, header: str = "stripe-signature"):
        self.header = header
        super().__init__(f"Missing signature header: {header}")


class InvalidSignature(VerificationError):
    """Raised when the signature does not match or the timestamp is stale."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid webhook signature: {reason}")


class MalformedEvent(VerificationError):
    """Raised when a verified body is not a well-formed event envelope."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed webhook event: {reason}")


class DuplicateSessionIgnored(StorefrontError):
    """Raised when an order already exists for a checkout session."""

    def __init__(self, session_id: str, order_id: str | None = None):
        self.session_id = session_id
        self.order_id = order_id
        super().__init__(f"Session already reconciled: {session_id}")


class UnresolvedProductReference(StorefrontError):
    """A paid line item that maps to no catalog product."""

    def __init__(self, product_ref: str | None, name: str | None):
        self.product_ref = product_ref
        self.name = name
        super().__init__(f"No product for line item ref={product_ref!r} name={name!r}")


class PersistenceFailure(StorefrontError):
    """Raised when the order ledger cannot be written or read."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        msg = f"Persistence failure during {operation}"
        if cause is not None:
            msg = f"{msg}: {type(cause).__name__}"
        super().__init__(msg)


class InvalidStatusTransition(StorefrontError):
    """Raised when an order status change is not allowed."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from {current} to {requested}")
