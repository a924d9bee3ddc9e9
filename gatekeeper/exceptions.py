"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from gatekeeper.models.domain import GateDecision


class EntitlementError(Exception):
    """Base exception for all entitlement errors."""

    pass


class LimitExceededError(EntitlementError):
    """Raised when quota and token fallback together cannot cover an action."""

    def __init__(self, feature: str, quantity: int, decision: GateDecision) -> None:
        self.feature = feature
        self.quantity = quantity
        self.decision = decision
        super().__init__(
            f"Limit exceeded for {feature} (quantity {quantity}): "
            f"{decision.reason or 'feature_limit_reached'}"
        )


class UnknownFeatureError(EntitlementError):
    """Raised when gating is requested for an unrecognized feature in strict mode."""

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Unknown feature: {feature}")


class ConcurrentModificationError(EntitlementError):
    """Raised when the stored entitlement version changed under a write."""

    def __init__(self, user_id: str, expected_version: int) -> None:
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification detected for {user_id} at version {expected_version}"
        )


class StorageUnavailableError(EntitlementError):
    """Raised when the entitlement store cannot be read or written."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Entitlement storage unavailable: {message}")


class ProductNotFoundError(EntitlementError):
    """Raised when a client supplies an unknown product identifier."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Unknown product ID: {product_id}")


class WebhookAuthenticationError(EntitlementError):
    """Raised when a billing event arrives without the shared secret."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Billing event authentication failed: {message}")


class SubscriptionRequiredError(EntitlementError):
    """Raised when a Pro-only route is called without an effective Pro tier."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Pro subscription required for {user_id}")


class InvalidTimeZoneError(EntitlementError):
    """Raised when a client supplies a name missing from the IANA time-zone database."""

    def __init__(self, time_zone: str) -> None:
        self.time_zone = time_zone
        super().__init__(f"Unknown time zone: {time_zone}")
