"""Async Stripe API wrapper: the only module that talks to the provider.

Every call goes through ``_provider_call`` so SDK errors surface as the
commerce error kinds: card declines become ``PaymentFailed`` (with Stripe's
user-safe message) and everything else becomes ``ProviderUnavailable``.
Provider error bodies are logged, never returned to callers.
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

import stripe
from stripe import StripeClient

from app.billing.exceptions import (
    ConfigurationMissing,
    InvalidSignature,
    PaymentFailed,
    ProviderUnavailable,
)
from app.config import settings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support and a bounded timeout."""
    if not settings.stripe_secret_key:
        raise ConfigurationMissing("STRIPE_SECRET_KEY is not configured")
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=settings.stripe_max_network_retries,
    )


def _provider_call(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await func(*args, **kwargs)
        except stripe.CardError as e:
            logger.warning("Stripe card error in %s: %s", func.__name__, e)
            raise PaymentFailed(e.user_message or "Your payment was declined.") from e
        except stripe.StripeError as e:
            logger.error("Stripe error in %s: %s", func.__name__, e)
            raise ProviderUnavailable() from e
    return wrapper


@_provider_call
async def find_customer_by_email(email: str) -> stripe.Customer | None:
    """Return the first Stripe customer registered with ``email``, if any."""
    client = get_stripe_client()
    result = await client.v1.customers.list_async(params={"email": email, "limit": 1})
    return result.data[0] if result.data else None


@_provider_call
async def create_customer(email: str, name: str, user_id: str) -> stripe.Customer:
    """Create a Stripe customer linked to a platform user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    customer = await client.v1.customers.create_async(
        params={
            "email": email,
            "name": name,
            "metadata": {"userId": user_id},
        }
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


@_provider_call
async def attach_payment_method(customer_id: str, payment_method_id: str) -> None:
    """Attach a payment method to the customer and make it the invoice default."""
    client = get_stripe_client()
    logger.info("Attaching payment method %s to customer %s", payment_method_id, customer_id)
    await client.v1.payment_methods.attach_async(
        payment_method_id,
        params={"customer": customer_id},
    )
    await client.v1.customers.update_async(
        customer_id,
        params={"invoice_settings": {"default_payment_method": payment_method_id}},
    )


@_provider_call
async def create_subscription(
    customer_id: str,
    price_id: str,
    metadata: dict[str, str],
) -> stripe.Subscription:
    """Create an incomplete subscription; the first invoice is confirmed client-side."""
    client = get_stripe_client()
    logger.info("Creating subscription for customer %s, price %s", customer_id, price_id)
    return await client.v1.subscriptions.create_async(
        params={
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": metadata,
            "expand": ["latest_invoice.confirmation_secret", "latest_invoice.payments"],
        }
    )


@_provider_call
async def change_subscription_price(
    subscription_id: str,
    price_id: str,
    metadata: dict[str, str],
) -> stripe.Subscription:
    """Move an existing subscription's single item onto ``price_id`` with proration."""
    client = get_stripe_client()
    logger.info("Changing subscription %s to price %s", subscription_id, price_id)
    subscription = await client.v1.subscriptions.retrieve_async(subscription_id)
    item_id = subscription["items"].data[0].id
    return await client.v1.subscriptions.update_async(
        subscription_id,
        params={
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "create_prorations",
            "cancel_at_period_end": False,
            "metadata": metadata,
        },
    )


@_provider_call
async def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    mode: str = "payment",
    metadata: dict[str, str] | None = None,
) -> stripe.checkout.Session:
    """Create a hosted Stripe Checkout Session (``payment`` or ``subscription`` mode)."""
    client = get_stripe_client()
    logger.info(
        "Creating %s checkout session for customer %s, price %s",
        mode,
        customer_id,
        price_id,
    )
    params: dict[str, Any] = {
        "mode": mode,
        "customer": customer_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata or {},
    }
    if mode == "payment":
        params["payment_intent_data"] = {"metadata": metadata or {}}
    return await client.v1.checkout.sessions.create_async(params=params)


@_provider_call
async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(subscription_id)


@_provider_call
async def set_cancel_at_period_end(subscription_id: str, cancel: bool = True) -> stripe.Subscription:
    """Schedule (or unschedule) cancellation at the end of the current period."""
    client = get_stripe_client()
    logger.info("Setting cancel_at_period_end=%s on subscription %s", cancel, subscription_id)
    return await client.v1.subscriptions.update_async(
        subscription_id,
        params={"cancel_at_period_end": cancel},
    )


@_provider_call
async def cancel_subscription_now(subscription_id: str) -> stripe.Subscription:
    """Cancel a subscription immediately."""
    client = get_stripe_client()
    logger.info("Cancelling subscription %s immediately", subscription_id)
    return await client.v1.subscriptions.cancel_async(subscription_id)


@_provider_call
async def retrieve_price(price_id: str) -> stripe.Price:
    """Retrieve a Stripe price (used for catalog display pricing)."""
    client = get_stripe_client()
    return await client.v1.prices.retrieve_async(price_id)


def verify_webhook_signature(payload: bytes, sig_header: str) -> None:
    """Check the ``Stripe-Signature`` header against the raw body.

    Raises:
        ConfigurationMissing: If no webhook signing secret is configured.
        InvalidSignature: If the header is missing, malformed, stale, or wrong.
    """
    if not settings.stripe_webhook_secret:
        raise ConfigurationMissing("STRIPE_WEBHOOK_SECRET is not configured")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        raise InvalidSignature() from e
