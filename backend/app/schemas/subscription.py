"""Pydantic v2 request/response schemas for subscription endpoints."""

from datetime import datetime

from pydantic import EmailStr, Field

from app.billing.catalog import Plan
from app.schemas.common import CamelModel

# --- Request schemas ---


class CreateSubscriptionRequest(CamelModel):
    """Start a subscription on ``plan`` paid with ``payment_method_id``."""

    plan: str = Field(..., min_length=1)
    payment_method_id: str = Field(..., min_length=1)
    email: EmailStr | None = None


class CancelSubscriptionRequest(CamelModel):
    at_period_end: bool = True


# --- Response schemas ---


class PlanResponse(CamelModel):
    key: str
    name: str
    duration_months: int
    display_price: str
    price_cents: int
    currency: str
    product_id: str | None
    price_id: str | None
    savings_percent: int
    savings_cents: int
    active: bool

    @classmethod
    def from_plan(cls, plan: Plan, display_price: str | None = None) -> "PlanResponse":
        return cls(
            key=plan.key,
            name=plan.name,
            duration_months=plan.duration_months,
            display_price=display_price or plan.display_price,
            price_cents=plan.price_cents,
            currency=plan.currency,
            product_id=plan.stripe_product_id,
            price_id=plan.stripe_price_id,
            savings_percent=plan.savings_percent,
            savings_cents=plan.savings_cents,
            active=plan.active,
        )


class PlansData(CamelModel):
    plans: list[PlanResponse]
    # For client-side payment method collection
    publishable_key: str | None = None


class SubscriptionDescriptor(CamelModel):
    """Stripe subscription as returned to the client for payment confirmation."""

    id: str
    status: str
    plan: str
    client_secret: str | None = None
    hosted_invoice_url: str | None = None
    # None for an in-place plan change
    purchase_id: str | None = None
    previous_plan: str | None = None


class CustomerResponse(CamelModel):
    id: str
    email: str


class CreateSubscriptionData(CamelModel):
    subscription: SubscriptionDescriptor
    customer: CustomerResponse


class SubscriptionInfoResponse(CamelModel):
    status: str
    is_active: bool
    plan: str | None
    stripe_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    days_remaining: int
    next_billing_date: datetime | None
    last_updated: datetime | None


class CancelSubscriptionData(CamelModel):
    subscription_id: str | None
    at_period_end: bool
    status: str
    already_cancelled: bool


class AccessData(CamelModel):
    has_access: bool
    status: str
    expiry_date: datetime | None
