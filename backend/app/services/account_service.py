"""Account service: user lookups for billing and account erasure."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.user import User
from app.services import audit_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: uuid.UUID | str | None) -> User | None:
    if not user_id:
        return None
    try:
        key = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
    except ValueError:
        return None
    return await db.get(User, key)


async def get_user_by_stripe_customer(db: AsyncSession, customer_id: str | None) -> User | None:
    if not customer_id:
        return None
    result = await db.execute(select(User).where(User.stripe_customer_id == customer_id))
    return result.scalar_one_or_none()


def erasure_token(user: User) -> str:
    return f"erased-{user.id.hex}"


async def erase_user(
    db: AsyncSession,
    user: User,
    context: AuditContext | None = None,
    reason: str = "request",
) -> str:
    """Erase a user's personal data while keeping commerce records.

    Email and name are replaced with an erasure token, the account is
    deactivated and outstanding tokens are revoked. The Stripe customer link,
    purchases and audit rows stay; audit entries have their identifiers
    redacted. Returns the erasure token.
    """
    token = erasure_token(user)
    if user.erased_at is not None:
        return token

    await audit_service.record(db, user, "account.erased", {"reason": reason}, context)
    await audit_service.redact_user(db, user.id, token)

    user.email = f"{token}@erased.invalid"
    user.name = token
    user.is_active = False
    user.token_version = (user.token_version or 0) + 1
    user.erased_at = utcnow()
    await db.flush()

    logger.info("Erased user %s (%s)", user.id, reason)
    return token
