"""Custom exception classes for the billing service."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is not explicitly set in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be set explicitly in production. "
            "Set the JWT_SECRET_KEY environment variable to a secure random string.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class BillingError(Exception):
    """Base exception for billing operations."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidBillingInputError(BillingError):
    """Raised when input is missing or malformed, before any side effect."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class NotFoundError(BillingError):
    """Raised when a referenced entity does not exist."""


class ProductNotFoundError(NotFoundError):
    """Raised when a subscription product does not exist."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Subscription product not found: {product_id}")


class SubscriptionNotFoundError(NotFoundError):
    """Raised when no subscription matches the lookup."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Subscription not found: {reference}")


class GenerationNotFoundError(NotFoundError):
    """Raised when a generation does not exist."""

    def __init__(self, generation_id: str) -> None:
        self.generation_id = generation_id
        super().__init__(f"Generation not found: {generation_id}")


class ConflictError(BillingError):
    """Raised when a write collides with a unique constraint."""


class SubscriptionConflictError(ConflictError):
    """Raised when a second open subscription would be created for a user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} already has an open subscription")


class ProviderError(BillingError):
    """Base exception for external provider failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GenerationProviderError(ProviderError):
    """Raised when the generation provider fails or times out."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        super().__init__(f"Generation failed: {reason}", status_code=status_code)


class PaymentProviderError(ProviderError):
    """Raised when a payment provider API call fails."""

    def __init__(self, operation: str, original_error: str) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Payment provider call failed during {operation}: {original_error}")


class PaymentProviderNotConfiguredError(ProviderError):
    """Raised when Stripe credentials are missing."""

    def __init__(self) -> None:
        super().__init__("Payment provider is not configured")


class WebhookSignatureError(BillingError):
    """Raised when a webhook payload fails signature verification."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Webhook signature verification failed: {reason}")
