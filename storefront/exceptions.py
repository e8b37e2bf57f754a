class StorefrontError(Exception):
    """Base class for storefront errors."""


class KHQRError(StorefrontError):
    """Base class for KHQR payment errors."""


class ConfigurationError(KHQRError):
    """Raised when required Bakong configuration is missing."""


class InvalidAmountError(KHQRError):
    """Raised when a payment amount is non-positive or not a finite number."""


class InvalidFieldError(KHQRError):
    """Raised when a value cannot be encoded into a KHQR field."""


class VerificationTransportError(KHQRError):
    """Raised when a single verification request fails in transit."""


class SessionExpiredError(KHQRError):
    """Raised when a payment window closes without settlement."""


class PaymentCancelledError(KHQRError):
    """Raised when a payment session is abandoned before a terminal state."""


class OrderCreationError(StorefrontError):
    """Raised when an order cannot be persisted."""
