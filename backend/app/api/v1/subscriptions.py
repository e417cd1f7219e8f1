"""Subscription API endpoints: plans, checkout, status and cancellation."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    active_subscription_required,
    get_current_active_user,
    get_db,
    request_audit_context,
    require_commerce_configured,
)
from app.billing.cancellation import cancel_subscription
from app.billing.catalog import get_catalog
from app.billing.checkout import start_subscription_checkout
from app.config import settings
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.common import Envelope
from app.schemas.subscription import (
    AccessData,
    CancelSubscriptionData,
    CancelSubscriptionRequest,
    CreateSubscriptionData,
    CreateSubscriptionRequest,
    CustomerResponse,
    PlanResponse,
    PlansData,
    SubscriptionDescriptor,
    SubscriptionInfoResponse,
)
from app.services import entitlement_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.get("/plans", response_model=Envelope[PlansData])
async def list_plans() -> Envelope[PlansData]:
    """List available plans (public, no auth required)."""
    catalog = get_catalog()
    plans = [
        PlanResponse.from_plan(plan, await catalog.price_of_plan(plan.key))
        for plan in catalog.list_plans()
    ]
    return Envelope(
        data=PlansData(plans=plans, publishable_key=settings.stripe_publishable_key or None)
    )


@router.post(
    "/create",
    response_model=Envelope[CreateSubscriptionData],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_commerce_configured)],
)
async def create_subscription(
    body: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    context: AuditContext = Depends(request_audit_context),
) -> Envelope[CreateSubscriptionData]:
    """Start a subscription; the client confirms the first payment with the returned secret."""
    if body.email and body.email.lower() != current_user.email.lower():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email does not match the authenticated account",
        )

    descriptor = await start_subscription_checkout(
        db,
        current_user,
        body.plan,
        body.payment_method_id,
        context,
    )
    return Envelope(
        data=CreateSubscriptionData(
            subscription=SubscriptionDescriptor(
                id=descriptor["id"],
                status=descriptor["status"],
                plan=descriptor["plan"],
                client_secret=descriptor["clientSecret"],
                hosted_invoice_url=descriptor["hostedInvoiceUrl"],
                purchase_id=descriptor["purchaseId"],
                previous_plan=descriptor["previousPlan"],
            ),
            customer=CustomerResponse(id=descriptor["customerId"], email=current_user.email),
        )
    )


@router.get("/user/current", response_model=Envelope[SubscriptionInfoResponse])
async def get_current_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Envelope[SubscriptionInfoResponse]:
    """Current subscription status, period and days remaining."""
    info = await entitlement_service.subscription_info(db, current_user)
    return Envelope(data=SubscriptionInfoResponse.model_validate(info))


@router.get("/user/access", response_model=Envelope[AccessData])
async def check_access(
    state: Subscription = Depends(active_subscription_required),
) -> Envelope[AccessData]:
    """Gate check for clients: 200 when subscribed, 403 SUBSCRIPTION_REQUIRED otherwise."""
    return Envelope(
        data=AccessData(has_access=True, status=state.status, expiry_date=state.current_period_end)
    )


@router.delete(
    "/{subscription_id}/cancel",
    response_model=Envelope[CancelSubscriptionData],
    dependencies=[Depends(require_commerce_configured)],
)
async def cancel(
    subscription_id: str,
    body: CancelSubscriptionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    context: AuditContext = Depends(request_audit_context),
) -> Envelope[CancelSubscriptionData]:
    """Cancel now or at period end (default). Repeating the call is a no-op."""
    at_period_end = body.at_period_end if body is not None else True
    result = await cancel_subscription(db, current_user, subscription_id, at_period_end, context)
    return Envelope(
        data=CancelSubscriptionData(
            subscription_id=result["subscriptionId"],
            at_period_end=result["atPeriodEnd"],
            status=result["status"],
            already_cancelled=result["alreadyCancelled"],
        )
    )
