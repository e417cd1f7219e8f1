"""Refund and cancel controller.

Cancellation is requested from Stripe and then confirmed by webhook. The only
local write made up front is the optimistic ``cancelled`` status for an
immediate cancel, so the UI reflects the request straight away.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import NoSubscription
from app.billing.stripe_client import cancel_subscription_now, set_cancel_at_period_end
from app.models.purchase import Purchase
from app.models.user import User
from app.services import audit_service, entitlement_service, purchase_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)


async def _started_by(db: AsyncSession, user: User, subscription_id: str) -> bool:
    start = await purchase_service.get_subscription_start(db, subscription_id)
    return start is not None and start.user_id == user.id


async def cancel_subscription(
    db: AsyncSession,
    user: User,
    subscription_id: str,
    at_period_end: bool = True,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Cancel the user's subscription now or at the end of the current period.

    ``subscription_id`` may be the Stripe subscription ID or the local
    subscription row ID. Calling this again for a subscription that is already
    cancelled (or already scheduled to cancel) succeeds without contacting
    Stripe.

    Raises:
        NoSubscription: The user has no active subscription with that ID.
        ProviderUnavailable: Stripe could not be reached.
    """
    state = await entitlement_service.get_state(db, user)
    if state is None:
        raise NoSubscription()
    if subscription_id not in (state.stripe_subscription_id, str(state.id)):
        # Stripe's deletion webhook unlinks the subscription from the row
        if state.status == "cancelled" and await _started_by(db, user, subscription_id):
            logger.info("Subscription %s already deleted at Stripe, nothing to do", subscription_id)
            return {
                "subscriptionId": subscription_id,
                "atPeriodEnd": False,
                "status": state.status,
                "alreadyCancelled": True,
            }
        raise NoSubscription()

    if state.status == "cancelled" or (at_period_end and state.cancel_at_period_end):
        logger.info("Subscription for user %s already cancelled, nothing to do", user.id)
        return {
            "subscriptionId": state.stripe_subscription_id,
            "atPeriodEnd": state.cancel_at_period_end,
            "status": state.status,
            "alreadyCancelled": True,
        }

    if not state.is_active or not state.stripe_subscription_id:
        raise NoSubscription()

    stripe_subscription_id = state.stripe_subscription_id
    # Release the connection before calling Stripe.
    await db.commit()

    if at_period_end:
        await set_cancel_at_period_end(stripe_subscription_id, True)
        await audit_service.record(
            db,
            user,
            "subscription.cancel_requested",
            {"stripeSubscriptionId": stripe_subscription_id, "atPeriodEnd": True},
            context,
        )
        status = state.status
    else:
        await cancel_subscription_now(stripe_subscription_id)
        state = await entitlement_service.get_state(db, user, for_update=True)
        await entitlement_service.mark_subscription_cancelled(
            db,
            user,
            state,
            context,
            reason="user_immediate",
            action="subscription.cancel_requested",
            clear_identifiers=False,
        )
        status = state.status

    logger.info(
        "Cancellation requested for subscription %s (at_period_end=%s)",
        stripe_subscription_id,
        at_period_end,
    )
    return {
        "subscriptionId": stripe_subscription_id,
        "atPeriodEnd": at_period_end,
        "status": status,
        "alreadyCancelled": False,
    }


async def apply_refund(
    db: AsyncSession,
    purchase: Purchase,
    context: AuditContext | None = None,
) -> bool:
    """Mark a completed purchase refunded and revoke what it granted.

    Program purchases lose the program. Subscription purchases keep the
    subscription running; whether to cancel it is left to an operator or a
    later subscription event. Returns False if the purchase was already
    refunded.

    Raises:
        InvalidPurchaseTransition: The purchase is pending or failed.
    """
    if purchase.status == "refunded":
        logger.info("Purchase %s already refunded", purchase.id)
        return False

    purchase_service.transition(purchase, "refunded")
    user = purchase.user

    if purchase.kind == "one-time-program" and purchase.product_key:
        await entitlement_service.remove_owned_program(
            db, user, purchase.product_key, context, reason="refund"
        )

    await audit_service.record(
        db,
        user,
        "purchase.refunded",
        {
            "purchaseId": str(purchase.id),
            "kind": purchase.kind,
            "productKey": purchase.product_key,
            "amount": purchase.total_amount,
        },
        context,
    )
    await db.flush()
    return True
