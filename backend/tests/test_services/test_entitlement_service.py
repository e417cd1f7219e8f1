"""Tests for the entitlement store."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from app.database import utcnow
from app.models.audit_entry import AuditEntry
from app.models.owned_program import OwnedProgram
from app.models.subscription import Subscription
from app.services import entitlement_service
from app.services.entitlement_service import EPOCH, SubscriptionSnapshot


def _snapshot(as_of, **overrides) -> SubscriptionSnapshot:
    fields = {
        "status": "active",
        "as_of": as_of,
        "plan": "1-month",
        "stripe_subscription_id": "sub_snap",
        "current_period_start": as_of,
        "current_period_end": as_of + timedelta(days=30),
    }
    fields.update(overrides)
    return SubscriptionSnapshot(**fields)


class TestEntitlementInvariant:
    @pytest.mark.parametrize(
        ("status", "end_offset", "expected"),
        [
            ("active", timedelta(days=1), True),
            ("past_due", timedelta(days=1), True),
            ("active", timedelta(days=-1), False),
            ("past_due", timedelta(seconds=-1), False),
            ("cancelled", timedelta(days=1), False),
            ("expired", timedelta(days=1), False),
            ("none", timedelta(days=1), False),
        ],
    )
    async def test_has_active_subscription(self, db_session, make_user, active_sub, status, end_offset, expected):
        user = await make_user(subscription=active_sub(status=status, current_period_end=utcnow() + end_offset))
        assert await entitlement_service.has_active_subscription(db_session, user) is expected
        info = await entitlement_service.subscription_info(db_session, user)
        assert info.is_active is expected

    async def test_no_state_row(self, db_session, make_user):
        user = await make_user()
        assert await entitlement_service.has_active_subscription(db_session, user) is False
        info = await entitlement_service.subscription_info(db_session, user)
        assert info.status == "none"
        assert info.days_remaining == 0

    async def test_missing_period_end_is_not_active(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub(current_period_end=None))
        assert await entitlement_service.has_active_subscription(db_session, user) is False


class TestSubscriptionInfo:
    def test_days_remaining_and_next_billing(self):
        now = utcnow()
        state = Subscription(
            status="active",
            plan="3-month",
            current_period_end=now + timedelta(days=4, hours=1),
            cancel_at_period_end=False,
        )
        info = entitlement_service.build_subscription_info(state, now=now)
        assert info.days_remaining == 5
        assert info.next_billing_date == state.current_period_end

    def test_no_next_billing_when_cancelling(self):
        now = utcnow()
        state = Subscription(
            status="active", current_period_end=now + timedelta(days=4), cancel_at_period_end=True
        )
        info = entitlement_service.build_subscription_info(state, now=now)
        assert info.is_active
        assert info.next_billing_date is None


class TestApplySnapshot:
    async def test_new_state_starts_at_epoch(self, db_session, make_user):
        user = await make_user()
        state = await entitlement_service.get_or_create_state(db_session, user)
        assert state.status == "none"
        assert state.last_updated == EPOCH

    async def test_applies_and_audits(self, db_session, make_user):
        user = await make_user()
        state = await entitlement_service.get_or_create_state(db_session, user, for_update=True)
        now = utcnow()

        assert await entitlement_service.apply_subscription_snapshot(db_session, user, state, _snapshot(now))
        await db_session.commit()

        assert state.plan == "1-month"
        assert state.last_updated == now
        assert state.is_active
        actions = (await db_session.execute(select(AuditEntry.action))).scalars().all()
        assert actions == ["subscription.snapshot_applied"]

    async def test_stale_snapshot_is_noop(self, db_session, make_user, active_sub):
        now = utcnow()
        user = await make_user(subscription=active_sub(last_updated=now, plan="6-month"))
        state = await entitlement_service.get_state(db_session, user, for_update=True)

        applied = await entitlement_service.apply_subscription_snapshot(
            db_session, user, state, _snapshot(now - timedelta(seconds=1), status="cancelled")
        )

        assert applied is False
        assert state.status == "active"
        assert state.plan == "6-month"
        count = (await db_session.execute(select(func.count()).select_from(AuditEntry))).scalar_one()
        assert count == 0

    async def test_same_timestamp_is_reapplied(self, db_session, make_user, active_sub):
        now = utcnow()
        user = await make_user(subscription=active_sub(last_updated=now))
        state = await entitlement_service.get_state(db_session, user, for_update=True)
        snapshot = _snapshot(now, cancel_at_period_end=True)

        assert await entitlement_service.apply_subscription_snapshot(db_session, user, state, snapshot)
        assert state.cancel_at_period_end is True

    async def test_concurrent_writers_cannot_both_win(self, session_factory, make_user, active_sub):
        user = await make_user(subscription=active_sub(stripe_subscription_id="sub_race"))
        now = utcnow()

        async with session_factory() as first, session_factory() as second:
            state_a = await entitlement_service.get_state(first, user)
            state_b = await entitlement_service.get_state(second, user)

            await entitlement_service.apply_subscription_snapshot(
                second, user, state_b, _snapshot(now, stripe_subscription_id="sub_race", plan="12-month")
            )
            await second.commit()

            with pytest.raises(StaleDataError):
                await entitlement_service.apply_subscription_snapshot(
                    first, user, state_a, _snapshot(now - timedelta(seconds=5), stripe_subscription_id="sub_race")
                )
            await first.rollback()

        async with session_factory() as db:
            state = await entitlement_service.get_state(db, user)
        assert state.plan == "12-month"
        assert state.version == 2


class TestOwnedPrograms:
    async def test_add_is_set_union(self, db_session, make_user):
        user = await make_user()
        assert await entitlement_service.add_owned_program(db_session, user, "beginner-full-body") is True
        assert await entitlement_service.add_owned_program(db_session, user, "beginner-full-body") is False
        await db_session.commit()

        count = (
            await db_session.execute(
                select(func.count()).select_from(OwnedProgram).where(OwnedProgram.user_id == user.id)
            )
        ).scalar_one()
        assert count == 1
        actions = (await db_session.execute(select(AuditEntry.action))).scalars().all()
        assert actions == ["program.granted"]

    async def test_list_and_remove(self, db_session, make_user):
        user = await make_user()
        await entitlement_service.add_owned_program(db_session, user, "beginner-full-body")
        await entitlement_service.add_owned_program(db_session, user, "weight-loss-kickstart")

        owned = await entitlement_service.list_owned_programs(db_session, user)
        assert {p.program_slug for p in owned} == {"beginner-full-body", "weight-loss-kickstart"}

        assert await entitlement_service.remove_owned_program(db_session, user, "beginner-full-body") is True
        assert await entitlement_service.remove_owned_program(db_session, user, "beginner-full-body") is False
        assert not await entitlement_service.owns(db_session, user, "beginner-full-body")
        assert await entitlement_service.owns(db_session, user, "weight-loss-kickstart")


class TestLocalTransitions:
    async def test_past_due_keeps_access(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub())
        state = await entitlement_service.get_state(db_session, user, for_update=True)
        assert await entitlement_service.mark_past_due(db_session, user, state)
        assert state.status == "past_due"
        assert state.is_active

    async def test_stale_past_due_ignored(self, db_session, make_user, active_sub):
        now = utcnow()
        user = await make_user(subscription=active_sub(last_updated=now))
        state = await entitlement_service.get_state(db_session, user, for_update=True)
        assert not await entitlement_service.mark_past_due(db_session, user, state, as_of=now - timedelta(minutes=1))
        assert state.status == "active"

    async def test_cancel_clears_identifiers(self, db_session, make_user, active_sub):
        user = await make_user(subscription=active_sub(stripe_subscription_id="sub_gone"))
        state = await entitlement_service.get_state(db_session, user, for_update=True)
        assert await entitlement_service.mark_subscription_cancelled(db_session, user, state)
        assert state.status == "cancelled"
        assert state.stripe_subscription_id is None
        # Periods are kept for the audit trail
        assert state.current_period_end is not None

    async def test_already_cancelled_accepts_older_confirmation(self, db_session, make_user, active_sub):
        now = utcnow()
        user = await make_user(subscription=active_sub(status="cancelled", last_updated=now))
        state = await entitlement_service.get_state(db_session, user, for_update=True)
        assert await entitlement_service.mark_subscription_cancelled(
            db_session, user, state, as_of=now - timedelta(minutes=5)
        )
        assert state.last_updated == now
