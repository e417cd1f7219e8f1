"""Stripe webhook event handlers: apply provider events to local state.

Each handler receives the session of the ingestor's transaction, the
validated envelope and the validated ``data.object``. Handlers only flush;
the ingestor commits together with the ProcessedEvent row. Anything that can
never succeed raises a ``PermanentEventError``.

Handlers never call Stripe. Data a payload omits is fetched by
:func:`expand_event_object` before the ingestor opens its transaction, so no
row lock is held across a provider round trip.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.cancellation import apply_refund
from app.billing.catalog import get_catalog
from app.billing.events import (
    ChargeObject,
    CheckoutSessionObject,
    InvoiceObject,
    InvoicePaymentObject,
    StripePayload,
    SubscriptionObject,
    WebhookEvent,
)
from app.billing.exceptions import MalformedEvent, UnknownReference
from app.billing.stripe_client import get_subscription
from app.config import settings
from app.models.purchase import Purchase
from app.models.subscription import Subscription
from app.models.user import User
from app.services import account_service, audit_service, entitlement_service, purchase_service
from app.services.audit_service import AuditContext
from app.services.entitlement_service import SubscriptionSnapshot

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, WebhookEvent, Any], Awaitable[None]]

# Stripe subscription status -> local status
_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "expired",
    "incomplete": "none",
    "paused": "none",
}


def map_stripe_status(status: str) -> str:
    return _STATUS_MAP.get(status, "none")


def _context(event: WebhookEvent) -> AuditContext:
    return AuditContext(actor="webhook", user_agent="stripe-webhook", event_id=event.id)


def _plan_key(price_id: str | None, *fallbacks: str | None) -> str | None:
    plan = get_catalog().plan_for_price_id(price_id)
    if plan is not None:
        return plan.key
    if price_id:
        logger.warning("Unknown price ID %s, keeping previous plan", price_id)
    return next((key for key in fallbacks if key), None)


def _snapshot(
    sub: SubscriptionObject,
    event: WebhookEvent,
    fallback_plan: str | None = None,
) -> SubscriptionSnapshot:
    period_start, period_end = sub.period
    return SubscriptionSnapshot(
        status=map_stripe_status(sub.status),
        as_of=event.created_at,
        plan=_plan_key(sub.price_id, sub.metadata.get("planKey"), fallback_plan),
        stripe_subscription_id=sub.id,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
    )


async def _fetch_subscription(subscription_id: str) -> SubscriptionObject:
    """Retrieve a subscription from Stripe and validate it like a webhook payload."""
    stripe_sub = await get_subscription(subscription_id)
    raw = stripe_sub.to_dict() if hasattr(stripe_sub, "to_dict") else stripe_sub
    try:
        return SubscriptionObject.model_validate(raw)
    except ValidationError as e:
        raise MalformedEvent(f"Stripe returned an unreadable subscription {subscription_id}") from e


_PERIOD_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})


async def expand_event_object(event: WebhookEvent, obj: StripePayload | None) -> StripePayload | None:
    """Fetch the subscription a payload only references, outside any transaction.

    Raises:
        ProviderUnavailable: Stripe could not be reached; the event is redelivered.
        MalformedEvent: Stripe returned something that is not a subscription.
    """
    if isinstance(obj, CheckoutSessionObject) and isinstance(obj.subscription, str):
        return obj.model_copy(update={"subscription": await _fetch_subscription(obj.subscription)})
    if (
        isinstance(obj, InvoiceObject)
        and event.type in _PERIOD_EVENTS
        and obj.subscription_id
        and obj.period[1] is None
        and obj.fetched_subscription is None
    ):
        return obj.model_copy(
            update={"fetched_subscription": await _fetch_subscription(obj.subscription_id)}
        )
    return obj


def _require_user(purchase: Purchase) -> User:
    user = purchase.user
    if user is None:
        raise UnknownReference(f"Purchase {purchase.id} has no user")
    return user


def _complete(purchase: Purchase) -> bool:
    """pending -> completed; an already completed purchase is left alone (no re-credit)."""
    if purchase.status == "completed":
        return False
    purchase_service.transition(purchase, "completed")
    return True


# --- checkout.session.completed ---


async def _find_checkout_purchase(db: AsyncSession, session: CheckoutSessionObject) -> Purchase:
    purchase = await purchase_service.get_purchase(db, session.metadata.get("purchaseId"))
    if purchase is None:
        purchase = await purchase_service.get_by_checkout_session(db, session.id)
    if purchase is None and session.subscription_id:
        purchase = await purchase_service.get_subscription_start(db, session.subscription_id)
    if purchase is None:
        raise UnknownReference(f"No purchase found for checkout session {session.id}")
    return purchase


async def handle_checkout_session_completed(
    db: AsyncSession, event: WebhookEvent, session: CheckoutSessionObject
) -> None:
    """Handle checkout.session.completed for both subscription and one-time checkouts."""
    purchase = await _find_checkout_purchase(db, session)
    if purchase.stripe_checkout_session_id is None:
        purchase.stripe_checkout_session_id = session.id

    if session.mode == "subscription" or session.subscription_id:
        await _complete_subscription_checkout(db, event, session, purchase)
    else:
        await _complete_program_checkout(db, event, session, purchase)


async def _complete_program_checkout(
    db: AsyncSession,
    event: WebhookEvent,
    session: CheckoutSessionObject,
    purchase: Purchase,
) -> None:
    slug = session.metadata.get("programSlug") or purchase.product_key
    if not slug:
        raise MalformedEvent(f"Checkout session {session.id} carries no program slug")
    program = get_catalog().get_program(slug)
    if program is None:
        raise UnknownReference(f"Unknown program {slug} in checkout session {session.id}")

    user = _require_user(purchase)
    context = _context(event)

    newly_completed = _complete(purchase)
    if session.payment_intent and purchase.stripe_payment_intent_id is None:
        purchase.stripe_payment_intent_id = session.payment_intent
    await db.flush()

    await entitlement_service.add_owned_program(db, user, program.slug, context, purchase.id)
    if newly_completed:
        await audit_service.record(
            db,
            user,
            "purchase.completed",
            {"purchaseId": str(purchase.id), "kind": purchase.kind, "productKey": program.slug},
            context,
        )
    logger.info("Checkout completed: program %s purchased by user %s", program.slug, user.id)


async def _complete_subscription_checkout(
    db: AsyncSession,
    event: WebhookEvent,
    session: CheckoutSessionObject,
    purchase: Purchase,
) -> None:
    subscription_id = session.subscription_id
    if not subscription_id:
        raise MalformedEvent(f"Subscription checkout session {session.id} has no subscription")

    stripe_sub = session.subscription
    if not isinstance(stripe_sub, SubscriptionObject):
        raise MalformedEvent(f"Subscription {subscription_id} was not expanded before dispatch")

    user = _require_user(purchase)
    context = _context(event)

    newly_completed = _complete(purchase)
    purchase.stripe_subscription_id = subscription_id
    await db.flush()

    state = await entitlement_service.get_or_create_state(db, user, for_update=True)
    snapshot = _snapshot(stripe_sub, event, fallback_plan=purchase.product_key)
    await entitlement_service.apply_subscription_snapshot(db, user, state, snapshot, context)

    if newly_completed:
        await audit_service.record(
            db,
            user,
            "purchase.completed",
            {"purchaseId": str(purchase.id), "kind": purchase.kind, "productKey": snapshot.plan},
            context,
        )
    logger.info(
        "Checkout completed: subscription %s activated on plan %s",
        subscription_id,
        snapshot.plan,
    )


# --- customer.subscription.* ---


async def _state_for_subscription(
    db: AsyncSession, subscription_id: str, customer_id: str | None
) -> tuple[User, Subscription]:
    """Locate the state row for a Stripe subscription, falling back to its customer."""
    state = await entitlement_service.get_state_by_stripe_subscription(
        db, subscription_id, for_update=True
    )
    if state is not None:
        return state.user, state

    user = await account_service.get_user_by_stripe_customer(db, customer_id)
    if user is None:
        start = await purchase_service.get_subscription_start(db, subscription_id)
        user = start.user if start is not None else None
    if user is None:
        raise UnknownReference(
            f"No user found for subscription {subscription_id} (customer {customer_id})"
        )
    state = await entitlement_service.get_or_create_state(db, user, for_update=True)
    return user, state


async def handle_subscription_updated(
    db: AsyncSession, event: WebhookEvent, stripe_sub: SubscriptionObject
) -> None:
    """Handle customer.subscription.updated: sync plan, status, period and cancel intent."""
    user, state = await _state_for_subscription(db, stripe_sub.id, stripe_sub.customer)

    if (
        state.stripe_subscription_id
        and state.stripe_subscription_id != stripe_sub.id
        and state.is_active
    ):
        logger.info(
            "Ignoring update for subscription %s: user %s is on subscription %s",
            stripe_sub.id,
            user.id,
            state.stripe_subscription_id,
        )
        return

    snapshot = _snapshot(stripe_sub, event, fallback_plan=state.plan)
    applied = await entitlement_service.apply_subscription_snapshot(
        db, user, state, snapshot, _context(event)
    )
    if applied:
        logger.info(
            "Subscription updated: %s -> plan=%s, status=%s, cancel_at_period_end=%s",
            stripe_sub.id,
            snapshot.plan,
            snapshot.status,
            snapshot.cancel_at_period_end,
        )


async def handle_subscription_deleted(
    db: AsyncSession, event: WebhookEvent, stripe_sub: SubscriptionObject
) -> None:
    """Handle customer.subscription.deleted: cancel locally, keep periods for audit."""
    state = await entitlement_service.get_state_by_stripe_subscription(
        db, stripe_sub.id, for_update=True
    )
    if state is None:
        if await account_service.get_user_by_stripe_customer(db, stripe_sub.customer) is None:
            raise UnknownReference(f"No user found for deleted subscription {stripe_sub.id}")
        logger.info("Subscription %s is no longer linked locally, nothing to cancel", stripe_sub.id)
        return

    await entitlement_service.mark_subscription_cancelled(
        db,
        state.user,
        state,
        _context(event),
        as_of=event.created_at,
        reason="provider_deleted",
    )
    logger.info("Subscription deleted: %s cancelled for user %s", stripe_sub.id, state.user_id)


# --- invoice.* ---


async def _invoice_owner(
    db: AsyncSession, invoice: InvoiceObject, subscription_id: str
) -> tuple[User, Subscription, Purchase | None]:
    start = await purchase_service.get_subscription_start(db, subscription_id)
    user, state = await _state_for_subscription(db, subscription_id, invoice.customer)
    return user, state, start


async def handle_invoice_paid(
    db: AsyncSession, event: WebhookEvent, invoice: InvoiceObject
) -> None:
    """Handle invoice.payment_succeeded / invoice.paid: refresh the period, ensure active."""
    subscription_id = invoice.subscription_id
    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return

    user, state, start = await _invoice_owner(db, invoice, subscription_id)
    context = _context(event)

    plan_key = _plan_key(
        invoice.price_id,
        state.plan if state.stripe_subscription_id == subscription_id else None,
        start.product_key if start is not None else None,
    )
    period_start, period_end = invoice.period
    if period_end is None and invoice.fetched_subscription is not None:
        period_start, period_end = invoice.fetched_subscription.period
    if period_end is None:
        raise MalformedEvent(f"Invoice {invoice.id} carries no billing period")

    snapshot = SubscriptionSnapshot(
        status="active",
        as_of=event.created_at,
        plan=plan_key,
        stripe_subscription_id=subscription_id,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=(
            state.cancel_at_period_end if state.stripe_subscription_id == subscription_id else False
        ),
    )
    await entitlement_service.apply_subscription_snapshot(db, user, state, snapshot, context)

    first_invoice = invoice.billing_reason == "subscription_create" or (
        start is not None and start.status == "pending"
    )
    if first_invoice and start is not None:
        if start.status == "failed":
            logger.warning(
                "Subscription %s paid after purchase %s was marked failed", subscription_id, start.id
            )
        elif _complete(start):
            start.stripe_invoice_id = start.stripe_invoice_id or invoice.id
            await audit_service.record(
                db,
                user,
                "purchase.completed",
                {"purchaseId": str(start.id), "kind": start.kind, "productKey": plan_key},
                context,
            )
        await db.flush()
    elif not first_invoice and await purchase_service.get_by_invoice(db, invoice.id) is None:
        await _record_renewal(db, user, invoice, plan_key, context)

    logger.info("Invoice paid: subscription %s confirmed active", subscription_id)


async def _record_renewal(
    db: AsyncSession,
    user: User,
    invoice: InvoiceObject,
    plan_key: str | None,
    context: AuditContext,
) -> None:
    plan = get_catalog().plan_for_price_id(invoice.price_id)
    name = plan.name if plan is not None else (plan_key or "Subscription")
    renewal = await purchase_service.create_pending_purchase(
        db,
        user,
        kind="subscription-renewal",
        items=[purchase_service.line_item(plan_key or "unknown", name, invoice.amount_paid)],
        currency=invoice.currency or settings.catalog_currency,
        stripe_customer_id=invoice.customer,
    )
    renewal.stripe_subscription_id = invoice.subscription_id
    renewal.stripe_invoice_id = invoice.id
    renewal.stripe_payment_intent_id = invoice.payment_intent_id
    purchase_service.transition(renewal, "completed")
    await db.flush()
    await audit_service.record(
        db,
        user,
        "subscription.renewed",
        {"purchaseId": str(renewal.id), "plan": plan_key, "amount": invoice.amount_paid},
        context,
    )


async def handle_invoice_payment_paid(
    db: AsyncSession, event: WebhookEvent, invoice_payment: InvoicePaymentObject
) -> None:
    """Handle invoice_payment.paid: link the payment intent to the invoice's purchase.

    Current API versions no longer put the payment intent on the invoice, and
    ``charge.refunded`` only names the payment intent, so this link is what
    lets a refunded renewal find its purchase.
    """
    payment_intent_id = invoice_payment.payment_intent_id
    if not payment_intent_id:
        logger.info("Invoice payment %s was not made with a payment intent", invoice_payment.id)
        return

    purchase = await purchase_service.get_by_invoice(db, invoice_payment.invoice)
    if purchase is None:
        logger.info(
            "No purchase for invoice %s yet, payment intent %s not linked",
            invoice_payment.invoice,
            payment_intent_id,
        )
        return

    if purchase.stripe_payment_intent_id != payment_intent_id:
        purchase.stripe_payment_intent_id = payment_intent_id
        await db.flush()
        logger.info("Linked payment intent %s to purchase %s", payment_intent_id, purchase.id)


async def handle_invoice_payment_failed(
    db: AsyncSession, event: WebhookEvent, invoice: InvoiceObject
) -> None:
    """Handle invoice.payment_failed: mark past_due and count the failure."""
    subscription_id = invoice.subscription_id
    if not subscription_id:
        logger.info(
            "Invoice %s has no subscription (one-time), skipping payment failure",
            invoice.id,
        )
        return

    user, state, start = await _invoice_owner(db, invoice, subscription_id)

    linked = await purchase_service.get_by_invoice(db, invoice.id)
    if linked is None and start is not None and start.status == "pending":
        linked = start
    if linked is not None:
        await purchase_service.record_payment_failure(db, linked)

    if state.stripe_subscription_id != subscription_id:
        # First invoice of a subscription that was never activated.
        logger.info(
            "Payment failed for unlinked subscription %s (user %s), purchase failure recorded",
            subscription_id,
            user.id,
        )
        return

    await entitlement_service.mark_past_due(
        db, user, state, _context(event), as_of=event.created_at
    )
    logger.info("Payment failed: subscription %s marked as past_due", subscription_id)


# --- charge.refunded ---


async def handle_charge_refunded(
    db: AsyncSession, event: WebhookEvent, charge: ChargeObject
) -> None:
    """Handle charge.refunded: mark the purchase refunded, revoke program access."""
    purchase = None
    if charge.payment_intent:
        purchase = await purchase_service.get_by_payment_intent(db, charge.payment_intent)
    if purchase is None and charge.invoice:
        purchase = await purchase_service.get_by_invoice(db, charge.invoice)
    if purchase is None:
        raise UnknownReference(
            f"No purchase found for refunded charge {charge.id} (payment intent {charge.payment_intent})"
        )

    if not charge.refunded:
        logger.info(
            "Charge %s partially refunded (%s of %s), purchase %s unchanged",
            charge.id,
            charge.amount_refunded,
            charge.amount,
            purchase.id,
        )
        return

    await apply_refund(db, purchase, _context(event))
    logger.info("Charge refunded: purchase %s marked refunded", purchase.id)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    # A created subscription is a snapshot like any update
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice_payment.paid": handle_invoice_payment_paid,
    "charge.refunded": handle_charge_refunded,
}


def get_handler(event_type: str) -> EventHandler | None:
    return EVENT_HANDLERS.get(event_type)

