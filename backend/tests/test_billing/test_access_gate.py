"""Tests for the access gate."""

from datetime import timedelta

import pytest

from app.billing.dependencies import require_active_subscription, require_program_ownership
from app.billing.exceptions import EntitlementRequired, UnknownProgram
from app.database import utcnow
from app.services import entitlement_service

pytestmark = pytest.mark.asyncio


class TestRequireActiveSubscription:
    async def test_active_passes(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub(plan="3-month"))
        state = await require_active_subscription(db_session, user)
        assert state.plan == "3-month"

    async def test_past_due_inside_period_passes(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub(status="past_due"))
        assert (await require_active_subscription(db_session, user)).status == "past_due"

    async def test_no_subscription(self, db_session, make_user):
        user = await make_user()
        with pytest.raises(EntitlementRequired) as exc_info:
            await require_active_subscription(db_session, user)

        error = exc_info.value
        assert error.code == "SUBSCRIPTION_REQUIRED"
        assert error.status_code == 403
        assert error.details["currentStatus"] == "none"
        assert error.details["expiryDate"] is None
        assert error.details["suggestedAction"]["type"] == "PURCHASE_SUBSCRIPTION"

    async def test_expired_offers_renewal(self, db_session, make_user, active_sub):
        ended = utcnow() - timedelta(days=2)
        user = await make_user(subscription=active_sub(status="expired", current_period_end=ended))
        with pytest.raises(EntitlementRequired) as exc_info:
            await require_active_subscription(db_session, user)

        details = exc_info.value.details
        assert details["currentStatus"] == "expired"
        assert details["expiryDate"] == ended.isoformat()
        assert details["suggestedAction"]["type"] == "RENEW_SUBSCRIPTION"

    async def test_lapsed_period_denied_before_reconciler_runs(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub(current_period_end=utcnow() - timedelta(minutes=1)))
        with pytest.raises(EntitlementRequired) as exc_info:
            await require_active_subscription(db_session, user)
        assert exc_info.value.details["currentStatus"] == "expired"

    async def test_empty_state_row(self, db_session, make_user):
        user = await make_user()
        await entitlement_service.get_or_create_state(db_session, user)
        await db_session.commit()
        with pytest.raises(EntitlementRequired) as exc_info:
            await require_active_subscription(db_session, user)
        assert exc_info.value.details["currentStatus"] == "none"


class TestRequireProgramOwnership:
    async def test_owner_passes(self, db_session, make_user):
        user = await make_user()
        await entitlement_service.add_owned_program(db_session, user, "beginner-full-body")
        await db_session.commit()

        program = await require_program_ownership(db_session, user, "beginner-full-body")
        assert program.slug == "beginner-full-body"

    async def test_slug_is_case_insensitive(self, db_session, make_user):
        user = await make_user()
        await entitlement_service.add_owned_program(db_session, user, "beginner-full-body")
        await db_session.commit()
        assert (await require_program_ownership(db_session, user, "Beginner-Full-Body")).slug == "beginner-full-body"

    async def test_not_owned(self, db_session, make_user):
        user = await make_user()
        with pytest.raises(EntitlementRequired) as exc_info:
            await require_program_ownership(db_session, user, "weight-loss-kickstart")

        error = exc_info.value
        assert error.code == "PROGRAM_PURCHASE_REQUIRED"
        assert error.details["currentStatus"] == "not_owned"
        assert error.details["suggestedAction"]["url"].endswith("/programs/weight-loss-kickstart")

    async def test_subscription_does_not_grant_programs(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub())
        with pytest.raises(EntitlementRequired):
            await require_program_ownership(db_session, user, "weight-loss-kickstart")

    async def test_admin_bypass(self, db_session, make_user):
        admin = await make_user(role="admin")
        assert (await require_program_ownership(db_session, admin, "weight-loss-kickstart")).slug == "weight-loss-kickstart"

    async def test_admin_bypass_can_be_disabled(self, db_session, make_user):
        admin = await make_user(role="admin")
        with pytest.raises(EntitlementRequired):
            await require_program_ownership(db_session, admin, "weight-loss-kickstart", allow_admin=False)

    async def test_unknown_program(self, db_session, make_user):
        user = await make_user()
        with pytest.raises(UnknownProgram):
            await require_program_ownership(db_session, user, "no-such-program")
