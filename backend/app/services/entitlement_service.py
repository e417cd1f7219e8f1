"""Entitlement store: the local, authoritative view of what a user owns.

Reads are used by the access gate and the API. Writes are only called from
the webhook handlers, the cancel/refund controller and the reconciler; every
write appends an audit entry in the same session so both commit together.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.owned_program import OwnedProgram
from app.models.subscription import Subscription
from app.models.user import User
from app.services import audit_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)

# Ordering signal for a state row that has never received a snapshot.
EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription state as reported by the provider at ``as_of``."""

    status: str  # none, active, past_due, cancelled, expired
    as_of: datetime
    plan: str | None = None
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class SubscriptionInfo:
    """Denormalised subscription view for the API."""

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


# --- Reads ---


async def get_state(
    db: AsyncSession, user: User, for_update: bool = False
) -> Subscription | None:
    query = select(Subscription).where(Subscription.user_id == user.id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_or_create_state(
    db: AsyncSession, user: User, for_update: bool = False
) -> Subscription:
    """Get the user's subscription row, creating an empty (status ``none``) one if missing."""
    state = await get_state(db, user, for_update=for_update)
    if state is not None:
        return state

    logger.info("Creating empty subscription state for user %s", user.id)
    state = Subscription(user_id=user.id, status="none", last_updated=EPOCH)
    db.add(state)
    await db.flush()
    return state


async def get_state_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str, for_update: bool = False
) -> Subscription | None:
    """Look up subscription state by Stripe subscription ID (used by webhooks)."""
    query = select(Subscription).where(
        Subscription.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def has_active_subscription(db: AsyncSession, user: User) -> bool:
    state = await get_state(db, user)
    return state is not None and state.is_active


async def owns(db: AsyncSession, user: User, program_slug: str) -> bool:
    result = await db.execute(
        select(OwnedProgram.id).where(
            OwnedProgram.user_id == user.id,
            OwnedProgram.program_slug == program_slug,
        )
    )
    return result.first() is not None


async def list_owned_programs(db: AsyncSession, user: User) -> list[OwnedProgram]:
    result = await db.execute(
        select(OwnedProgram)
        .where(OwnedProgram.user_id == user.id)
        .order_by(OwnedProgram.acquired_at)
    )
    return list(result.scalars().all())


def build_subscription_info(state: Subscription | None, now: datetime | None = None) -> SubscriptionInfo:
    now = now or utcnow()
    if state is None:
        return SubscriptionInfo(
            status="none",
            is_active=False,
            plan=None,
            stripe_subscription_id=None,
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=False,
            days_remaining=0,
            next_billing_date=None,
            last_updated=None,
        )

    is_active = state.is_active_at(now)
    days_remaining = 0
    if is_active and state.current_period_end is not None:
        days_remaining = max(math.ceil((state.current_period_end - now).total_seconds() / 86400), 0)

    return SubscriptionInfo(
        status=state.status,
        is_active=is_active,
        plan=state.plan,
        stripe_subscription_id=state.stripe_subscription_id,
        current_period_start=state.current_period_start,
        current_period_end=state.current_period_end,
        cancel_at_period_end=state.cancel_at_period_end,
        days_remaining=days_remaining,
        next_billing_date=(
            state.current_period_end if is_active and not state.cancel_at_period_end else None
        ),
        last_updated=state.last_updated,
    )


async def subscription_info(db: AsyncSession, user: User) -> SubscriptionInfo:
    return build_subscription_info(await get_state(db, user))


# --- Writes ---


def _is_stale(state: Subscription, as_of: datetime) -> bool:
    return state.last_updated is not None and as_of < state.last_updated


async def apply_subscription_snapshot(
    db: AsyncSession,
    user: User,
    state: Subscription,
    snapshot: SubscriptionSnapshot,
    context: AuditContext | None = None,
) -> bool:
    """Overwrite plan, status, period and cancellation intent from a provider snapshot.

    Returns False (and changes nothing) when the snapshot is older than the
    one already stored.
    """
    if _is_stale(state, snapshot.as_of):
        logger.info(
            "Discarding stale snapshot for user %s (as_of=%s < last_updated=%s)",
            user.id,
            snapshot.as_of,
            state.last_updated,
        )
        return False

    previous_status = state.status
    if snapshot.stripe_subscription_id is not None:
        state.stripe_subscription_id = snapshot.stripe_subscription_id
    if snapshot.plan is not None:
        state.plan = snapshot.plan
    state.status = snapshot.status
    state.current_period_start = snapshot.current_period_start
    state.current_period_end = snapshot.current_period_end
    state.cancel_at_period_end = snapshot.cancel_at_period_end
    state.last_updated = snapshot.as_of
    await db.flush()

    await audit_service.record(
        db,
        user,
        "subscription.snapshot_applied",
        {
            "previousStatus": previous_status,
            "status": state.status,
            "plan": state.plan,
            "stripeSubscriptionId": state.stripe_subscription_id,
            "currentPeriodEnd": state.current_period_end.isoformat() if state.current_period_end else None,
            "cancelAtPeriodEnd": state.cancel_at_period_end,
        },
        context,
    )
    logger.info(
        "Updated subscription %s: plan=%s, status=%s -> %s",
        state.id,
        state.plan,
        previous_status,
        state.status,
    )
    return True


async def add_owned_program(
    db: AsyncSession,
    user: User,
    program_slug: str,
    context: AuditContext | None = None,
    purchase_id: uuid.UUID | None = None,
) -> bool:
    """Grant a program. Returns False if the user already owned it (set semantics)."""
    if await owns(db, user, program_slug):
        logger.info("User %s already owns program %s", user.id, program_slug)
        return False

    db.add(OwnedProgram(user_id=user.id, program_slug=program_slug, purchase_id=purchase_id))
    await db.flush()
    await audit_service.record(
        db,
        user,
        "program.granted",
        {"programSlug": program_slug, "purchaseId": str(purchase_id) if purchase_id else None},
        context,
    )
    logger.info("Granted program %s to user %s", program_slug, user.id)
    return True


async def remove_owned_program(
    db: AsyncSession,
    user: User,
    program_slug: str,
    context: AuditContext | None = None,
    reason: str = "refund",
) -> bool:
    result = await db.execute(
        delete(OwnedProgram).where(
            OwnedProgram.user_id == user.id,
            OwnedProgram.program_slug == program_slug,
        )
    )
    removed = (result.rowcount or 0) > 0
    if removed:
        await audit_service.record(
            db,
            user,
            "program.revoked",
            {"programSlug": program_slug, "reason": reason},
            context,
        )
        logger.info("Revoked program %s from user %s (%s)", program_slug, user.id, reason)
    return removed


async def mark_subscription_expired(
    db: AsyncSession,
    user: User,
    state: Subscription,
    context: AuditContext | None = None,
    now: datetime | None = None,
) -> str:
    """End a subscription whose period has run out.

    Scheduled cancellations become ``cancelled``; everything else becomes
    ``expired``. Provider identifiers are cleared. Returns the new status.

    ``last_updated`` is stamped with the end of the period rather than the
    time of the sweep, so a provider snapshot taken after the period ended
    (a renewal delivered late) still applies.
    """
    expired_at = state.current_period_end or now or utcnow()
    previous_status = state.status
    state.status = "cancelled" if state.cancel_at_period_end else "expired"
    state.stripe_subscription_id = None
    state.cancel_at_period_end = False
    if state.last_updated is None or state.last_updated < expired_at:
        state.last_updated = expired_at
    await db.flush()

    await audit_service.record(
        db,
        user,
        "subscription.expired",
        {
            "previousStatus": previous_status,
            "status": state.status,
            "plan": state.plan,
            "expiryDate": state.current_period_end.isoformat() if state.current_period_end else None,
        },
        context,
    )
    logger.info("Subscription expired for user %s: %s -> %s", user.id, previous_status, state.status)
    return state.status


async def mark_subscription_cancelled(
    db: AsyncSession,
    user: User,
    state: Subscription,
    context: AuditContext | None = None,
    as_of: datetime | None = None,
    reason: str = "provider",
    action: str = "subscription.cancelled",
    clear_identifiers: bool = True,
) -> bool:
    """Cancel locally: status ``cancelled``, periods kept for audit.

    Provider identifiers are cleared unless ``clear_identifiers`` is False
    (optimistic cancel, where the confirming webhook still needs to find the
    row). A row that is already cancelled accepts the confirmation whatever
    its timestamp, since it cannot regress anything.
    """
    as_of = as_of or utcnow()
    if state.status != "cancelled" and _is_stale(state, as_of):
        logger.info("Discarding stale cancellation for user %s", user.id)
        return False

    previous_status = state.status
    previous_subscription_id = state.stripe_subscription_id
    state.status = "cancelled"
    if clear_identifiers:
        state.stripe_subscription_id = None
    state.cancel_at_period_end = False
    state.last_updated = max(as_of, state.last_updated) if state.last_updated else as_of
    await db.flush()

    await audit_service.record(
        db,
        user,
        action,
        {
            "previousStatus": previous_status,
            "stripeSubscriptionId": previous_subscription_id,
            "reason": reason,
        },
        context,
    )
    logger.info("Subscription cancelled for user %s (%s)", user.id, reason)
    return True


async def mark_past_due(
    db: AsyncSession,
    user: User,
    state: Subscription,
    context: AuditContext | None = None,
    as_of: datetime | None = None,
) -> bool:
    as_of = as_of or utcnow()
    if _is_stale(state, as_of):
        logger.info("Discarding stale payment failure for user %s", user.id)
        return False

    previous_status = state.status
    state.status = "past_due"
    state.last_updated = as_of
    await db.flush()

    await audit_service.record(
        db,
        user,
        "subscription.past_due",
        {"previousStatus": previous_status, "stripeSubscriptionId": state.stripe_subscription_id},
        context,
    )
    logger.info("Subscription for user %s marked as past_due", user.id)
    return True
