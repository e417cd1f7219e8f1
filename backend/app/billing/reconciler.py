"""Reconciler: periodic sweeps that keep local state honest between webhooks.

Every sweep walks its candidates in primary-key order, one batch per
transaction. Each candidate is re-read under a row lock and re-checked
before it is touched, so a snapshot written by a webhook after the batch was
selected is never overwritten.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.billing.ingestor import purge_processed_events
from app.config import settings
from app.database import async_session_factory, utcnow
from app.models.purchase import Purchase
from app.models.subscription import ENTITLED_STATUSES, Subscription
from app.models.user import User
from app.services import account_service, audit_service, entitlement_service, purchase_service
from app.services.audit_service import RECONCILER_CONTEXT

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


@dataclass
class ReconcileReport:
    expired: int = 0
    past_due_cancelled: int = 0
    stale_pending_failed: int = 0
    unverified_removed: int = 0
    unverified_erased: int = 0
    events_purged: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def _sweep(
    session_factory: SessionFactory,
    model: Any,
    criteria: list[Any],
    apply: Callable[[AsyncSession, Any], Awaitable[bool]],
    name: str,
    batch_size: int | None = None,
) -> int:
    """Select candidate IDs batch by batch and run ``apply`` on each locked row.

    ``apply`` re-checks the row and returns whether it changed anything.
    """
    batch_size = batch_size or settings.reconcile_batch_size
    changed = 0
    last_id: uuid.UUID | None = None

    while True:
        async with session_factory() as db:
            query = select(model.id).where(*criteria).order_by(model.id).limit(batch_size)
            if last_id is not None:
                query = query.where(model.id > last_id)
            ids = list((await db.execute(query)).scalars().all())
            if not ids:
                break

            batch_changed = 0
            for row_id in ids:
                row = (
                    await db.execute(select(model).where(model.id == row_id).with_for_update())
                ).scalar_one_or_none()
                if row is not None and await apply(db, row):
                    batch_changed += 1
            try:
                await db.commit()
                changed += batch_changed
            except (StaleDataError, IntegrityError) as e:
                await db.rollback()
                logger.warning(
                    "%s sweep: batch after %s lost a race (%s), will retry next cycle",
                    name,
                    last_id,
                    type(e).__name__,
                )
            last_id = ids[-1]
        if len(ids) < batch_size:
            break

    if changed:
        logger.info("%s sweep: %d row(s) updated", name, changed)
    return changed


async def sweep_expired_subscriptions(
    session_factory: SessionFactory = async_session_factory,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    """Expire entitled subscriptions whose period has ended.

    Scheduled cancellations end as ``cancelled``, everything else as ``expired``.
    """
    now = now or utcnow()

    async def apply(db: AsyncSession, state: Subscription) -> bool:
        if state.status not in ENTITLED_STATUSES:
            return False
        if state.current_period_end is None or state.current_period_end >= now:
            return False
        await entitlement_service.mark_subscription_expired(
            db, state.user, state, RECONCILER_CONTEXT
        )
        return True

    return await _sweep(
        session_factory,
        Subscription,
        [Subscription.status.in_(sorted(ENTITLED_STATUSES)), Subscription.current_period_end < now],
        apply,
        "expired",
        batch_size,
    )


async def sweep_past_due_subscriptions(
    session_factory: SessionFactory = async_session_factory,
    now: datetime | None = None,
    grace: timedelta | None = None,
    batch_size: int | None = None,
) -> int:
    """Cancel subscriptions that have stayed past_due beyond the grace period.

    The cancellation is dated to the moment the grace period ran out, so a
    payment Stripe recorded after that still reactivates the subscription.
    """
    now = now or utcnow()
    grace = grace or timedelta(days=settings.past_due_grace_days)
    cutoff = now - grace

    async def apply(db: AsyncSession, state: Subscription) -> bool:
        if state.status != "past_due" or state.last_updated >= cutoff:
            return False
        return await entitlement_service.mark_subscription_cancelled(
            db,
            state.user,
            state,
            RECONCILER_CONTEXT,
            as_of=state.last_updated + grace,
            reason="past_due_grace_expired",
            action="subscription.past_due_auto_cancel",
        )

    return await _sweep(
        session_factory,
        Subscription,
        [Subscription.status == "past_due", Subscription.last_updated < cutoff],
        apply,
        "past-due",
        batch_size,
    )


async def sweep_stale_pending_purchases(
    session_factory: SessionFactory = async_session_factory,
    now: datetime | None = None,
    max_age: timedelta | None = None,
    batch_size: int | None = None,
) -> int:
    """Fail purchases that never left ``pending``."""
    now = now or utcnow()
    cutoff = now - (max_age or timedelta(hours=settings.stale_pending_hours))

    async def apply(db: AsyncSession, purchase: Purchase) -> bool:
        if purchase.status != "pending" or purchase.created_at >= cutoff:
            return False
        purchase_service.transition(purchase, "failed")
        await audit_service.record(
            db,
            purchase.user,
            "purchase.expired",
            {"purchaseId": str(purchase.id), "kind": purchase.kind, "productKey": purchase.product_key},
            RECONCILER_CONTEXT,
        )
        return True

    return await _sweep(
        session_factory,
        Purchase,
        [Purchase.status == "pending", Purchase.created_at < cutoff],
        apply,
        "stale-pending",
        batch_size,
    )


async def sweep_unverified_accounts(
    session_factory: SessionFactory = async_session_factory,
    now: datetime | None = None,
    window: timedelta | None = None,
    batch_size: int | None = None,
) -> tuple[int, int]:
    """Remove accounts that never verified their email.

    Accounts already linked to a Stripe customer are erased instead of
    deleted, so the customer link and purchase history survive. Returns
    ``(removed, erased)``.
    """
    now = now or utcnow()
    cutoff = now - (window or timedelta(minutes=settings.unverified_account_minutes))
    erased = 0

    async def apply(db: AsyncSession, user: User) -> bool:
        nonlocal erased
        if user.is_email_verified or user.erased_at is not None or user.created_at >= cutoff:
            return False
        if user.is_admin:
            return False
        if user.stripe_customer_id:
            await account_service.erase_user(db, user, RECONCILER_CONTEXT, reason="unverified")
            erased += 1
            return False
        await audit_service.record(
            db,
            user,
            "account.removed",
            {"reason": "unverified"},
            RECONCILER_CONTEXT,
        )
        await audit_service.redact_user(db, user.id, account_service.erasure_token(user))
        await db.delete(user)
        await db.flush()
        return True

    removed = await _sweep(
        session_factory,
        User,
        [
            User.is_email_verified.is_(False),
            User.erased_at.is_(None),
            User.created_at < cutoff,
        ],
        apply,
        "unverified-account",
        batch_size,
    )
    if erased:
        logger.info("unverified-account sweep: %d account(s) erased", erased)
    return removed, erased


async def purge_old_events(
    session_factory: SessionFactory = async_session_factory,
    older_than: timedelta | None = None,
) -> int:
    async with session_factory() as db:
        removed = await purge_processed_events(db, older_than)
        await db.commit()
    return removed


async def run_reconciliation(
    session_factory: SessionFactory = async_session_factory,
    now: datetime | None = None,
) -> ReconcileReport:
    """Run every sweep once and report what changed."""
    now = now or utcnow()
    report = ReconcileReport()
    report.expired = await sweep_expired_subscriptions(session_factory, now)
    report.past_due_cancelled = await sweep_past_due_subscriptions(session_factory, now)
    report.stale_pending_failed = await sweep_stale_pending_purchases(session_factory, now)
    report.unverified_removed, report.unverified_erased = await sweep_unverified_accounts(
        session_factory, now
    )
    report.events_purged = await purge_old_events(session_factory)
    logger.info("Reconciliation finished: %s", report.as_dict())
    return report
