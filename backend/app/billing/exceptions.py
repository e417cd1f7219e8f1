"""Commerce error kinds.

Every error carries a stable ``code`` and the HTTP status it maps to at the
API boundary (see ``app.api.errors``). Webhook processing additionally sorts
errors into permanent ones (the event can never succeed, so it is recorded as
dead) and retryable ones (the provider should redeliver).
"""

from datetime import datetime
from typing import Any


class CommerceError(Exception):
    """Base class for caller-facing commerce errors."""

    code = "COMMERCE_ERROR"
    status_code = 400
    default_message = "Commerce request failed"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class PermanentEventError(CommerceError):
    """A webhook event that will fail the same way on every redelivery."""


class UnknownPlan(CommerceError):
    code = "UNKNOWN_PLAN"
    status_code = 404
    default_message = "Subscription plan not found"

    def __init__(self, plan_key: str) -> None:
        super().__init__(f"Unknown subscription plan: {plan_key}", {"plan": plan_key})
        self.plan_key = plan_key


class UnknownProgram(CommerceError):
    code = "UNKNOWN_PROGRAM"
    status_code = 404
    default_message = "Program not found"

    def __init__(self, slug: str) -> None:
        super().__init__(f"Program not found or not available: {slug}", {"slug": slug})
        self.slug = slug


class AlreadyEntitled(CommerceError):
    code = "ALREADY_ENTITLED"
    status_code = 409
    default_message = "You already have access to this item"


class EntitlementRequired(CommerceError):
    """Raised by the access gate. ``details`` is the gate's response contract."""

    code = "SUBSCRIPTION_REQUIRED"
    status_code = 403
    default_message = "You need an active subscription to access this feature."

    def __init__(
        self,
        message: str | None = None,
        *,
        current_status: str,
        expiry_date: datetime | None,
        suggested_action: dict[str, str],
        code: str | None = None,
    ) -> None:
        super().__init__(
            message,
            {
                "currentStatus": current_status,
                "expiryDate": expiry_date.isoformat() if expiry_date else None,
                "suggestedAction": suggested_action,
            },
        )
        if code:
            self.code = code
        self.current_status = current_status
        self.expiry_date = expiry_date
        self.suggested_action = suggested_action


class NoSubscription(CommerceError):
    code = "NO_SUBSCRIPTION"
    status_code = 404
    default_message = "No active subscription found"


class ProviderUnavailable(CommerceError):
    """Transient provider failure (timeout, connection, 5xx, rate limit)."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    default_message = "Payment provider is temporarily unavailable. Please try again."


class PaymentFailed(CommerceError):
    """The provider declined the payment; ``message`` is the provider's user-safe text."""

    code = "PAYMENT_FAILED"
    status_code = 402
    default_message = "Payment failed"


class Conflict(CommerceError):
    """Optimistic concurrency retries were exhausted."""

    code = "CONFLICT"
    status_code = 409
    default_message = "The resource was modified concurrently. Please retry."


class ConfigurationMissing(CommerceError):
    code = "CONFIGURATION_MISSING"
    status_code = 503
    default_message = "Commerce is not configured on this server"


class MalformedEvent(PermanentEventError):
    code = "MALFORMED_EVENT"
    default_message = "Webhook event payload is malformed"


class UnknownReference(PermanentEventError):
    """A webhook names a user, purchase, plan or program we do not know."""

    code = "UNKNOWN_REFERENCE"
    status_code = 404
    default_message = "Webhook event references an unknown record"


class InvalidPurchaseTransition(PermanentEventError):
    code = "INVALID_PURCHASE_TRANSITION"
    status_code = 409
    default_message = "Purchase status transition is not allowed"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move purchase from {current} to {requested}",
            {"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class InvalidSignature(CommerceError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    default_message = "Invalid webhook signature"
