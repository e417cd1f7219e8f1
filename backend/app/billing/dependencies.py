"""Access gate: entitlement checks for routes that need a subscription or a program.

The gate reads only the local entitlement store; Stripe is never queried
inline. The ``EntitlementRequired`` details (current status, expiry date and
a suggested next action) are the gate's response contract.
"""

import logging

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user
from app.billing.catalog import Program, get_catalog
from app.billing.exceptions import ConfigurationMissing, EntitlementRequired, UnknownProgram
from app.config import settings
from app.database import get_db, utcnow
from app.models.subscription import ENTITLED_STATUSES, Subscription
from app.models.user import User
from app.services import entitlement_service

logger = logging.getLogger(__name__)


def _subscription_action(status: str) -> dict[str, str]:
    if status == "past_due":
        return {
            "type": "UPDATE_PAYMENT_METHOD",
            "label": "Update payment method",
            "url": f"{settings.frontend_url}/subscriptions/manage",
        }
    if status in ("cancelled", "expired"):
        return {
            "type": "RENEW_SUBSCRIPTION",
            "label": "Renew subscription",
            "url": f"{settings.frontend_url}/subscriptions",
        }
    return {
        "type": "PURCHASE_SUBSCRIPTION",
        "label": "View plans",
        "url": f"{settings.frontend_url}/subscriptions",
    }


async def require_active_subscription(db: AsyncSession, user: User) -> Subscription:
    """Return the user's subscription state if it is active.

    Raises:
        EntitlementRequired: No subscription, or one that has lapsed.
    """
    state = await entitlement_service.get_state(db, user)
    now = utcnow()
    if state is not None and state.is_active_at(now):
        return state

    if state is None:
        current_status, expiry_date = "none", None
    else:
        current_status, expiry_date = state.status, state.current_period_end
        # Period ran out before the reconciler caught up
        if current_status in ENTITLED_STATUSES:
            current_status = "expired"

    logger.info("Subscription required for user %s (status=%s)", user.id, current_status)
    raise EntitlementRequired(
        current_status=current_status,
        expiry_date=expiry_date,
        suggested_action=_subscription_action(current_status),
    )


async def require_program_ownership(
    db: AsyncSession,
    user: User,
    slug: str,
    allow_admin: bool = True,
) -> Program:
    """Return the program if the user owns it (admins pass when ``allow_admin``).

    Raises:
        UnknownProgram: Slug is not in the catalog.
        EntitlementRequired: User does not own the program.
    """
    program = get_catalog().get_program(slug)
    if program is None:
        raise UnknownProgram(slug)

    if allow_admin and user.is_admin:
        return program
    if await entitlement_service.owns(db, user, program.slug):
        return program

    logger.info("Program %s not owned by user %s", program.slug, user.id)
    raise EntitlementRequired(
        "You need to purchase this program to access its content.",
        current_status="not_owned",
        expiry_date=None,
        suggested_action={
            "type": "PURCHASE_PROGRAM",
            "label": "Purchase program",
            "url": f"{settings.frontend_url}/programs/{program.slug}",
        },
        code="PROGRAM_PURCHASE_REQUIRED",
    )


# --- FastAPI dependencies ---


async def require_commerce_configured() -> None:
    """Refuse to serve commerce routes while Stripe settings are missing."""
    missing = settings.missing_commerce_settings
    if missing:
        raise ConfigurationMissing(details={"missing": missing})


async def active_subscription_required(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> Subscription:
    return await require_active_subscription(db, user)


async def program_ownership_required(
    slug: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> Program:
    return await require_program_ownership(db, user, slug)
