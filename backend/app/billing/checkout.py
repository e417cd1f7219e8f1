"""Checkout coordinator: starts subscription and program purchases.

Both flows write a pending Purchase and commit it before Stripe is asked to
create anything, so a provider failure leaves a pending row behind for the
stale-pending sweep instead of an orphaned charge with no local record.
Entitlements are never granted here; that happens when the webhook arrives.

A subscriber who picks a different plan keeps their Stripe subscription:
its price is swapped in place and the resulting ``customer.subscription.updated``
webhook moves the local state onto the new plan.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.catalog import Plan, get_catalog
from app.billing.customers import get_or_create_customer
from app.billing.exceptions import AlreadyEntitled
from app.billing.stripe_client import (
    change_subscription_price,
    create_checkout_session,
    create_subscription,
)
from app.config import settings
from app.models.subscription import Subscription
from app.models.user import User
from app.services import audit_service, entitlement_service, purchase_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)


def _attr(obj: Any, name: str) -> Any:
    if obj is None or isinstance(obj, str):
        return None
    return getattr(obj, name, None)


def _invoice_payment_intent_id(invoice: Any) -> str | None:
    """First payment intent attached to an expanded invoice's ``payments`` list."""
    for invoice_payment in _attr(_attr(invoice, "payments"), "data") or []:
        payment_intent = _attr(_attr(invoice_payment, "payment"), "payment_intent")
        if isinstance(payment_intent, str):
            return payment_intent
        if payment_intent is not None:
            return _attr(payment_intent, "id")
    return None


async def _change_plan(
    db: AsyncSession,
    user: User,
    state: Subscription,
    plan: Plan,
    context: AuditContext | None,
) -> dict[str, Any]:
    previous_plan = state.plan
    await audit_service.record(
        db,
        user,
        "subscription.plan_change_requested",
        {"from": previous_plan, "to": plan.key, "subscriptionId": state.stripe_subscription_id},
        context,
    )
    await db.commit()

    subscription = await change_subscription_price(
        state.stripe_subscription_id,
        plan.stripe_price_id,
        metadata={"userId": str(user.id), "planKey": plan.key},
    )
    logger.info(
        "Plan change requested for user %s: %s -> %s on subscription %s",
        user.id,
        previous_plan,
        plan.key,
        subscription.id,
    )
    return {
        "id": subscription.id,
        "status": subscription.status,
        "plan": plan.key,
        "previousPlan": previous_plan,
        "clientSecret": None,
        "hostedInvoiceUrl": None,
        "purchaseId": None,
        "customerId": user.stripe_customer_id or subscription.customer,
    }


async def start_subscription_checkout(
    db: AsyncSession,
    user: User,
    plan_key: str,
    payment_method_id: str | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Create a Stripe subscription for ``plan_key``.

    Returns a descriptor with the subscription id and status, the client
    secret of the first invoice (for client-side confirmation) and the hosted
    invoice URL when Stripe provides one. An active subscriber on another
    plan gets their existing subscription moved to ``plan_key`` instead, and
    no purchase is created.

    Raises:
        UnknownPlan: Plan key is not in the catalog or not sellable.
        AlreadyEntitled: User already has an active subscription on this plan.
        ProviderUnavailable: Stripe could not be reached.
        PaymentFailed: The payment method was declined.
    """
    plan = get_catalog().resolve_plan(plan_key)

    state = await entitlement_service.get_state(db, user)
    if state is not None and state.is_active:
        if state.plan == plan.key:
            raise AlreadyEntitled(f"You already have an active {plan.name} subscription")
        if state.stripe_subscription_id:
            return await _change_plan(db, user, state, plan, context)

    customer_id = await get_or_create_customer(db, user, payment_method_id)

    purchase = await purchase_service.create_pending_purchase(
        db,
        user,
        kind="subscription-start",
        items=[purchase_service.line_item(plan.key, plan.name, plan.price_cents)],
        currency=plan.currency,
        stripe_customer_id=customer_id,
    )
    await audit_service.record(
        db,
        user,
        "subscription.checkout_started",
        {"plan": plan.key, "purchaseId": str(purchase.id)},
        context,
    )
    await db.commit()

    subscription = await create_subscription(
        customer_id,
        plan.stripe_price_id,
        metadata={"userId": str(user.id), "planKey": plan.key, "purchaseId": str(purchase.id)},
    )

    invoice = _attr(subscription, "latest_invoice")

    purchase.stripe_subscription_id = subscription.id
    purchase.stripe_invoice_id = invoice if isinstance(invoice, str) else _attr(invoice, "id")
    purchase.stripe_payment_intent_id = _invoice_payment_intent_id(invoice)
    await db.flush()

    logger.info(
        "Started subscription checkout for user %s: plan=%s, subscription=%s, purchase=%s",
        user.id,
        plan.key,
        subscription.id,
        purchase.id,
    )
    return {
        "id": subscription.id,
        "status": subscription.status,
        "plan": plan.key,
        "previousPlan": None,
        "clientSecret": _attr(_attr(invoice, "confirmation_secret"), "client_secret"),
        "hostedInvoiceUrl": _attr(invoice, "hosted_invoice_url"),
        "purchaseId": str(purchase.id),
        "customerId": customer_id,
    }


async def start_program_checkout(
    db: AsyncSession,
    user: User,
    slug: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Create a hosted Stripe Checkout session for a one-time program purchase.

    Raises:
        UnknownProgram: Slug is not in the catalog or the program is inactive.
        AlreadyEntitled: User already owns the program.
        ProviderUnavailable: Stripe could not be reached.
    """
    program = get_catalog().resolve_program(slug)

    if await entitlement_service.owns(db, user, program.slug):
        raise AlreadyEntitled(f"You already own {program.title}")

    customer_id = await get_or_create_customer(db, user)

    purchase = await purchase_service.create_pending_purchase(
        db,
        user,
        kind="one-time-program",
        items=[purchase_service.line_item(program.slug, program.title, program.price_cents)],
        currency=program.currency,
        stripe_customer_id=customer_id,
    )
    await audit_service.record(
        db,
        user,
        "program.checkout_started",
        {"programSlug": program.slug, "purchaseId": str(purchase.id)},
        context,
    )
    await db.commit()

    success_url = (
        success_url
        or f"{settings.frontend_url}/programs/{program.slug}?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = cancel_url or f"{settings.frontend_url}/programs/{program.slug}"

    session = await create_checkout_session(
        customer_id=customer_id,
        price_id=program.stripe_price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        mode="payment",
        metadata={
            "userId": str(user.id),
            "programSlug": program.slug,
            "purchaseId": str(purchase.id),
        },
    )

    purchase.stripe_checkout_session_id = session.id
    await db.flush()

    logger.info(
        "Started program checkout for user %s: program=%s, session=%s, purchase=%s",
        user.id,
        program.slug,
        session.id,
        purchase.id,
    )
    return {
        "checkoutUrl": session.url,
        "sessionId": session.id,
        "purchaseId": str(purchase.id),
    }
