"""Customer registry: links platform users to Stripe customers."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.stripe_client import attach_payment_method, create_customer, find_customer_by_email
from app.config import settings
from app.models.user import User

logger = logging.getLogger(__name__)


async def get_or_create_customer(
    db: AsyncSession,
    user: User,
    payment_method_id: str | None = None,
) -> str:
    """Return the user's Stripe customer ID, linking or creating one if needed.

    The local record is trusted when present. Otherwise an existing customer
    with the same email is linked, or a new one is created. The ID is only
    written to the user after Stripe has answered, and an existing ID is
    never overwritten.

    Raises:
        ProviderUnavailable: If Stripe cannot be reached.
        PaymentFailed: If the payment method is declined on attach.
    """
    customer_id = user.stripe_customer_id

    if customer_id is None:
        existing = await find_customer_by_email(user.email)
        if existing is not None:
            logger.info("Linking existing Stripe customer %s to user %s", existing.id, user.id)
            customer_id = existing.id
        else:
            customer = await create_customer(
                email=user.email,
                name=user.name,
                user_id=str(user.id),
            )
            customer_id = customer.id

    if payment_method_id:
        await attach_payment_method(customer_id, payment_method_id)

    if user.stripe_customer_id is None:
        user.stripe_customer_id = customer_id
        user.billing_environment = settings.billing_environment
        await db.flush()

    return customer_id
