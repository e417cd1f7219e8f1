"""Tests for the checkout coordinator with mocked Stripe calls."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.checkout import start_program_checkout, start_subscription_checkout
from app.billing.exceptions import AlreadyEntitled, ProviderUnavailable, UnknownPlan, UnknownProgram
from app.models.audit_entry import AuditEntry
from app.models.purchase import Purchase
from app.services import entitlement_service

pytestmark = pytest.mark.asyncio


def _stripe_subscription(sub_id: str = "sub_test_new") -> SimpleNamespace:
    return SimpleNamespace(
        id=sub_id,
        status="incomplete",
        latest_invoice=SimpleNamespace(
            id="in_test_1",
            hosted_invoice_url="https://invoice.stripe.com/i/test",
            confirmation_secret=SimpleNamespace(client_secret="pi_test_1_secret_abc", type="payment_intent"),
            payments=SimpleNamespace(
                data=[SimpleNamespace(payment=SimpleNamespace(type="payment_intent", payment_intent="pi_test_1"))]
            ),
        ),
    )


def _current_api_subscription() -> stripe.Subscription:
    """A subscription as the current API returns it with ``latest_invoice`` expanded."""
    return stripe.Subscription.construct_from(
        {
            "id": "sub_test_basil",
            "object": "subscription",
            "status": "incomplete",
            "customer": "cus_test_1",
            "items": {"object": "list", "data": [{"id": "si_1", "object": "subscription_item"}]},
            "latest_invoice": {
                "id": "in_test_basil",
                "object": "invoice",
                "hosted_invoice_url": "https://invoice.stripe.com/i/basil",
                "confirmation_secret": {"client_secret": "pi_basil_secret_xyz", "type": "payment_intent"},
                "payments": {
                    "object": "list",
                    "data": [
                        {
                            "id": "inpay_1",
                            "object": "invoice_payment",
                            "invoice": "in_test_basil",
                            "payment": {
                                "type": "payment_intent",
                                "payment_intent": {"id": "pi_basil", "object": "payment_intent"},
                            },
                        }
                    ],
                },
            },
        },
        "sk_test_123",
    )


async def _purchase_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count()).select_from(Purchase))).scalar_one()


class TestStartSubscriptionCheckout:
    async def test_creates_pending_purchase_and_subscription(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        create = AsyncMock(return_value=_stripe_subscription())
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch("app.billing.checkout.create_subscription", new=create),
        ):
            result = await start_subscription_checkout(db_session, user, "1-month", "pm_test_123")

        assert result["id"] == "sub_test_new"
        assert result["clientSecret"] == "pi_test_1_secret_abc"
        assert result["hostedInvoiceUrl"] == "https://invoice.stripe.com/i/test"
        assert result["customerId"] == "cus_test_1"

        purchase = await db_session.get(Purchase, uuid.UUID(result["purchaseId"]))
        assert purchase.status == "pending"
        assert purchase.kind == "subscription-start"
        assert purchase.product_key == "1-month"
        assert purchase.total_amount == 999
        assert purchase.stripe_subscription_id == "sub_test_new"
        assert purchase.stripe_invoice_id == "in_test_1"
        assert purchase.stripe_payment_intent_id == "pi_test_1"

        args, kwargs = create.call_args
        assert args == ("cus_test_1", "price_test_1m")
        assert kwargs["metadata"]["purchaseId"] == result["purchaseId"]
        assert kwargs["metadata"]["planKey"] == "1-month"

    async def test_no_entitlement_granted_before_webhook(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch(
                "app.billing.checkout.create_subscription",
                new=AsyncMock(return_value=_stripe_subscription()),
            ),
        ):
            await start_subscription_checkout(db_session, user, "3-month", "pm_test_123")
        assert not await entitlement_service.has_active_subscription(db_session, user)

    async def test_already_entitled_makes_no_purchase_or_provider_call(
        self, db_session: AsyncSession, make_user, active_sub
    ):
        user = await make_user(stripe_customer_id="cus_test_1", subscription=active_sub(plan="1-month"))
        create = AsyncMock()
        find = AsyncMock()
        with (
            patch("app.billing.checkout.create_subscription", new=create),
            patch("app.billing.customers.find_customer_by_email", new=find),
        ):
            with pytest.raises(AlreadyEntitled) as exc_info:
                await start_subscription_checkout(db_session, user, "1-month", "pm_test_123")

        assert exc_info.value.status_code == 409
        create.assert_not_awaited()
        find.assert_not_awaited()
        assert await _purchase_count(db_session) == 0

    async def test_reads_current_invoice_shape(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch(
                "app.billing.checkout.create_subscription",
                new=AsyncMock(return_value=_current_api_subscription()),
            ),
        ):
            result = await start_subscription_checkout(db_session, user, "1-month", "pm_test_123")

        assert result["clientSecret"] == "pi_basil_secret_xyz"
        assert result["hostedInvoiceUrl"] == "https://invoice.stripe.com/i/basil"
        purchase = await db_session.get(Purchase, uuid.UUID(result["purchaseId"]))
        assert purchase.stripe_invoice_id == "in_test_basil"
        assert purchase.stripe_payment_intent_id == "pi_basil"

    async def test_unexpanded_invoice_leaves_secret_empty(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        subscription = SimpleNamespace(id="sub_test_new", status="incomplete", latest_invoice="in_test_1")
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch("app.billing.checkout.create_subscription", new=AsyncMock(return_value=subscription)),
        ):
            result = await start_subscription_checkout(db_session, user, "1-month", "pm_test_123")

        assert result["clientSecret"] is None
        purchase = await db_session.get(Purchase, uuid.UUID(result["purchaseId"]))
        assert purchase.stripe_invoice_id == "in_test_1"
        assert purchase.stripe_payment_intent_id is None

    async def test_plan_change_updates_existing_subscription(
        self, db_session: AsyncSession, make_user, active_sub
    ):
        user = await make_user(
            stripe_customer_id="cus_test_1",
            subscription=active_sub(plan="1-month", stripe_subscription_id="sub_existing"),
        )
        change = AsyncMock(return_value=SimpleNamespace(id="sub_existing", status="active", customer="cus_test_1"))
        create = AsyncMock()
        with (
            patch("app.billing.checkout.change_subscription_price", new=change),
            patch("app.billing.checkout.create_subscription", new=create),
        ):
            result = await start_subscription_checkout(db_session, user, "12-month", "pm_test_123")

        create.assert_not_awaited()
        args, kwargs = change.call_args
        assert args == ("sub_existing", "price_test_12m")
        assert kwargs["metadata"]["planKey"] == "12-month"

        assert result["id"] == "sub_existing"
        assert result["plan"] == "12-month"
        assert result["previousPlan"] == "1-month"
        assert result["purchaseId"] is None
        assert await _purchase_count(db_session) == 0

        # The local plan moves when Stripe's update webhook arrives
        state = await entitlement_service.get_state(db_session, user)
        assert state.plan == "1-month"
        actions = (
            await db_session.execute(select(AuditEntry.action).where(AuditEntry.user_id == user.id))
        ).scalars().all()
        assert actions == ["subscription.plan_change_requested"]

    async def test_lapsed_subscriber_gets_new_subscription(
        self, db_session: AsyncSession, make_user, active_sub
    ):
        user = await make_user(
            stripe_customer_id="cus_test_1",
            subscription=active_sub(plan="1-month", status="expired", stripe_subscription_id="sub_old"),
        )
        change = AsyncMock()
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch("app.billing.checkout.change_subscription_price", new=change),
            patch(
                "app.billing.checkout.create_subscription",
                new=AsyncMock(return_value=_stripe_subscription()),
            ),
        ):
            result = await start_subscription_checkout(db_session, user, "12-month", "pm_test_123")

        change.assert_not_awaited()
        assert result["purchaseId"] is not None

    async def test_unknown_plan(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with pytest.raises(UnknownPlan):
            await start_subscription_checkout(db_session, user, "lifetime", "pm_test_123")
        assert await _purchase_count(db_session) == 0

    async def test_provider_failure_leaves_pending_purchase(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch(
                "app.billing.checkout.create_subscription",
                new=AsyncMock(side_effect=ProviderUnavailable()),
            ),
        ):
            with pytest.raises(ProviderUnavailable):
                await start_subscription_checkout(db_session, user, "1-month", "pm_test_123")

        await db_session.rollback()
        purchases = (await db_session.execute(select(Purchase))).scalars().all()
        assert [p.status for p in purchases] == ["pending"]

    async def test_audit_entry_recorded(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        with (
            patch("app.billing.customers.attach_payment_method", new=AsyncMock()),
            patch(
                "app.billing.checkout.create_subscription",
                new=AsyncMock(return_value=_stripe_subscription()),
            ),
        ):
            await start_subscription_checkout(db_session, user, "6-month", "pm_test_123")
        actions = (
            await db_session.execute(select(AuditEntry.action).where(AuditEntry.user_id == user.id))
        ).scalars().all()
        assert actions == ["subscription.checkout_started"]


class TestStartProgramCheckout:
    async def test_creates_checkout_session(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        session = SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")
        create = AsyncMock(return_value=session)
        with patch("app.billing.checkout.create_checkout_session", new=create):
            result = await start_program_checkout(db_session, user, "advanced-strength-training")

        assert result["checkoutUrl"] == session.url
        assert result["sessionId"] == "cs_test_1"

        kwargs = create.call_args.kwargs
        assert kwargs["price_id"] == "price_test_ast"
        assert kwargs["mode"] == "payment"
        assert kwargs["metadata"]["programSlug"] == "advanced-strength-training"
        assert kwargs["metadata"]["purchaseId"] == result["purchaseId"]
        assert "{CHECKOUT_SESSION_ID}" in kwargs["success_url"]

        purchase = (await db_session.execute(select(Purchase))).scalar_one()
        assert purchase.kind == "one-time-program"
        assert purchase.status == "pending"
        assert purchase.stripe_checkout_session_id == "cs_test_1"
        assert not await entitlement_service.owns(db_session, user, "advanced-strength-training")

    async def test_custom_redirect_urls(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        create = AsyncMock(return_value=SimpleNamespace(id="cs_test_2", url="https://x"))
        with patch("app.billing.checkout.create_checkout_session", new=create):
            await start_program_checkout(
                db_session,
                user,
                "beginner-full-body",
                success_url="https://app.test/done",
                cancel_url="https://app.test/back",
            )
        assert create.call_args.kwargs["success_url"] == "https://app.test/done"
        assert create.call_args.kwargs["cancel_url"] == "https://app.test/back"

    async def test_already_owned(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_customer_id="cus_test_1")
        await entitlement_service.add_owned_program(db_session, user, "beginner-full-body")
        await db_session.commit()

        create = AsyncMock()
        with patch("app.billing.checkout.create_checkout_session", new=create):
            with pytest.raises(AlreadyEntitled):
                await start_program_checkout(db_session, user, "beginner-full-body")
        create.assert_not_awaited()
        assert await _purchase_count(db_session) == 0

    async def test_unknown_program(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with pytest.raises(UnknownProgram):
            await start_program_checkout(db_session, user, "not-a-program")
