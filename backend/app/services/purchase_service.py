"""Purchase service: pending purchases and their guarded status transitions."""

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import InvalidPurchaseTransition
from app.config import settings
from app.database import utcnow
from app.models.purchase import PURCHASE_KINDS, Purchase
from app.models.user import User

logger = logging.getLogger(__name__)


def line_item(product_key: str, name: str, unit_price: int, quantity: int = 1) -> dict[str, Any]:
    return {
        "productKey": product_key,
        "name": name,
        "quantity": quantity,
        "unitPrice": unit_price,
        "totalPrice": unit_price * quantity,
    }


async def create_pending_purchase(
    db: AsyncSession,
    user: User,
    kind: str,
    items: list[dict[str, Any]],
    currency: str,
    stripe_customer_id: str | None = None,
) -> Purchase:
    if kind not in PURCHASE_KINDS:
        raise ValueError(f"Unknown purchase kind: {kind}")
    purchase = Purchase(
        user_id=user.id,
        kind=kind,
        items=items,
        total_amount=sum(item["totalPrice"] for item in items),
        currency=currency,
        status="pending",
        stripe_customer_id=stripe_customer_id or user.stripe_customer_id,
        billing_environment=settings.billing_environment,
    )
    db.add(purchase)
    await db.flush()
    logger.info("Created pending %s purchase %s for user %s", kind, purchase.id, user.id)
    return purchase


async def get_purchase(db: AsyncSession, purchase_id: uuid.UUID | str | None) -> Purchase | None:
    if not purchase_id:
        return None
    try:
        key = purchase_id if isinstance(purchase_id, uuid.UUID) else uuid.UUID(str(purchase_id))
    except ValueError:
        return None
    return await db.get(Purchase, key)


async def _first(db: AsyncSession, *criteria) -> Purchase | None:
    result = await db.execute(
        select(Purchase).where(*criteria).order_by(Purchase.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_purchases(
    db: AsyncSession,
    user: User,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Purchase]:
    """The user's purchases, newest first."""
    query = select(Purchase).where(Purchase.user_id == user.id)
    if status is not None:
        query = query.where(Purchase.status == status)
    query = query.order_by(Purchase.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_by_checkout_session(db: AsyncSession, session_id: str) -> Purchase | None:
    return await _first(db, Purchase.stripe_checkout_session_id == session_id)


async def get_by_payment_intent(db: AsyncSession, payment_intent_id: str) -> Purchase | None:
    return await _first(db, Purchase.stripe_payment_intent_id == payment_intent_id)


async def get_by_invoice(db: AsyncSession, invoice_id: str) -> Purchase | None:
    return await _first(db, Purchase.stripe_invoice_id == invoice_id)


async def get_subscription_start(db: AsyncSession, stripe_subscription_id: str) -> Purchase | None:
    """The purchase that started a given Stripe subscription."""
    return await _first(
        db,
        Purchase.stripe_subscription_id == stripe_subscription_id,
        Purchase.kind == "subscription-start",
    )


def transition(purchase: Purchase, status: str) -> None:
    """Move a purchase to ``status``.

    Only pending->completed, pending->failed and completed->refunded are
    allowed.

    Raises:
        InvalidPurchaseTransition: For any other transition.
    """
    if not purchase.can_transition_to(status):
        raise InvalidPurchaseTransition(purchase.status, status)
    logger.info("Purchase %s: %s -> %s", purchase.id, purchase.status, status)
    purchase.status = status
    if status == "completed":
        purchase.completed_at = utcnow()


async def record_payment_failure(db: AsyncSession, purchase: Purchase) -> None:
    purchase.failure_count = (purchase.failure_count or 0) + 1
    await db.flush()
