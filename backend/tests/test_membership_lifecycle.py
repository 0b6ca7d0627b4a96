from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import sqlalchemy as sa

from wns_payments.domain.memberships import service as membership_service
from wns_payments.domain.memberships import statuses
from wns_payments.domain.memberships.db_models import GroupMemberStatus, GroupMembership, GroupMembershipEvent
from wns_payments.domain.memberships.supersession import (
    CancelSupersededSubscription,
    KeepSupersededSubscription,
    resolve_supersession_policy,
)

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2024, 4, 15, 10, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


def _naive(value):
    return value.replace(tzinfo=None) if value is not None else None


def _completion(world, event_id="evt_checkout_1", **overrides):
    values = dict(
        event_id=event_id,
        group_id=world.group_id,
        user_id=world.member_id,
        tier_id=world.monthly_tier_id,
        billing_period="month",
        checkout_session_id="cs_1",
        customer_id="cus_1",
        subscription_id="sub_1",
        payment_intent_id="pi_1",
    )
    values.update(overrides)
    return membership_service.CheckoutCompletion(**values)


class RecordingPolicy:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self.error = error

    async def handle(self, membership, *, previous_subscription_id, new_subscription_id, event_id):
        self.calls.append(
            {
                "previous": previous_subscription_id,
                "new": new_subscription_id,
                "event_id": event_id,
            }
        )
        if self.error is not None:
            raise self.error


async def _seed_membership(async_session_maker, world):
    async with async_session_maker() as session:
        await membership_service.apply_checkout_completion(session, _completion(world), now=NOW)
        await session.commit()


async def _load(async_session_maker, world):
    async with async_session_maker() as session:
        membership = await membership_service.get_membership(session, world.group_id, world.member_id)
        legacy = (
            await session.execute(
                sa.select(GroupMemberStatus).where(
                    GroupMemberStatus.group_id == world.group_id,
                    GroupMemberStatus.user_id == world.member_id,
                )
            )
        ).scalar_one_or_none()
    return membership, legacy


@pytest.mark.parametrize(
    "start,period,expected",
    [
        (datetime(2024, 1, 31, tzinfo=timezone.utc), "month", datetime(2024, 2, 29, tzinfo=timezone.utc)),
        (datetime(2023, 1, 31, tzinfo=timezone.utc), "month", datetime(2023, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 12, 15, tzinfo=timezone.utc), "month", datetime(2025, 1, 15, tzinfo=timezone.utc)),
        (datetime(2024, 2, 29, tzinfo=timezone.utc), "year", datetime(2025, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 5, 1, tzinfo=timezone.utc), " Month ", datetime(2024, 6, 1, tzinfo=timezone.utc)),
        (datetime(2024, 5, 1, tzinfo=timezone.utc), "once", None),
        (datetime(2024, 5, 1, tzinfo=timezone.utc), None, None),
        (datetime(2024, 5, 1, tzinfo=timezone.utc), "fortnight", None),
    ],
)
def test_add_billing_period(start, period, expected):
    assert membership_service.add_billing_period(start, period) == expected


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("active", statuses.ACTIVE),
        ("trialing", statuses.ACTIVE),
        ("canceled", statuses.CANCELED),
        ("incomplete_expired", statuses.CANCELED),
        ("past_due", statuses.PAST_DUE),
        ("unpaid", statuses.PAST_DUE),
        (None, statuses.PAST_DUE),
    ],
)
def test_map_subscription_status(provider_status, expected):
    assert statuses.map_subscription_status(provider_status) == expected


@pytest.mark.anyio
async def test_checkout_creates_active_membership_and_legacy_row(async_session_maker, billing_world):
    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session, _completion(billing_world), now=NOW
        )
        await session.commit()

    assert change.created is True
    assert change.applied is True

    membership, legacy = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.ACTIVE
    assert membership.tier_id == billing_world.monthly_tier_id
    assert _naive(membership.expires_at) == datetime(2024, 4, 15, 10, 0)
    assert membership.stripe_subscription_id == "sub_1"
    assert membership.stripe_customer_id == "cus_1"
    assert membership.stripe_last_event_id == "evt_checkout_1"
    assert legacy.status == statuses.LEGACY_ACTIVE


@pytest.mark.anyio
async def test_checkout_for_once_tier_never_expires(async_session_maker, billing_world):
    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session,
            _completion(
                billing_world,
                tier_id=billing_world.once_tier_id,
                billing_period="once",
                subscription_id=None,
            ),
            now=NOW,
        )
        await session.commit()

    assert change.membership.expires_at is None


@pytest.mark.anyio
async def test_replayed_checkout_event_is_a_no_op(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)
    later = datetime(2024, 3, 20, tzinfo=timezone.utc)

    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session, _completion(billing_world), now=later
        )
        await session.commit()

    assert change.applied is False
    membership, _ = await _load(async_session_maker, billing_world)
    assert _naive(membership.renewed_at) == _naive(NOW)


@pytest.mark.anyio
async def test_new_checkout_renews_existing_membership(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)
    later = datetime(2024, 4, 10, tzinfo=timezone.utc)

    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session,
            _completion(
                billing_world,
                event_id="evt_checkout_2",
                tier_id=billing_world.yearly_tier_id,
                billing_period="year",
                checkout_session_id="cs_2",
                subscription_id=None,
                customer_id=None,
            ),
            now=later,
        )
        await session.commit()

    assert change.created is False
    membership, _ = await _load(async_session_maker, billing_world)
    assert membership.tier_id == billing_world.yearly_tier_id
    assert _naive(membership.expires_at) == datetime(2025, 4, 10)
    assert membership.stripe_subscription_id == "sub_1"
    assert membership.stripe_customer_id == "cus_1"
    assert membership.stripe_checkout_session_id == "cs_2"


@pytest.mark.anyio
async def test_checkout_with_new_subscription_runs_supersession(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)
    policy = RecordingPolicy()

    async with async_session_maker() as session:
        await membership_service.apply_checkout_completion(
            session,
            _completion(billing_world, event_id="evt_checkout_2", subscription_id="sub_2"),
            supersession=policy,
            now=NOW,
        )
        await session.commit()

    assert policy.calls == [{"previous": "sub_1", "new": "sub_2", "event_id": "evt_checkout_2"}]
    membership, _ = await _load(async_session_maker, billing_world)
    assert membership.stripe_subscription_id == "sub_2"


@pytest.mark.anyio
async def test_supersession_skipped_for_canceled_or_same_subscription(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)
    policy = RecordingPolicy()

    async with async_session_maker() as session:
        await membership_service.apply_checkout_completion(
            session,
            _completion(billing_world, event_id="evt_checkout_2", subscription_id="sub_1"),
            supersession=policy,
            now=NOW,
        )
        await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_deleted",
            subscription_id="sub_1",
            provider_status="canceled",
            period_start=None,
            period_end=None,
            deleted=True,
        )
        await membership_service.apply_checkout_completion(
            session,
            _completion(billing_world, event_id="evt_checkout_3", subscription_id="sub_3"),
            supersession=policy,
            now=NOW,
        )
        await session.commit()

    assert policy.calls == []


@pytest.mark.anyio
async def test_supersession_failure_does_not_fail_checkout(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)
    policy = RecordingPolicy(error=RuntimeError("stripe down"))

    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session,
            _completion(billing_world, event_id="evt_checkout_2", subscription_id="sub_2"),
            supersession=policy,
            now=NOW,
        )
        await session.commit()

    assert change.applied is True
    assert len(policy.calls) == 1


@pytest.mark.anyio
async def test_subscription_update_moves_status_and_mirrors_legacy(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        updated = await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_1",
            subscription_id="sub_1",
            provider_status="past_due",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
        )
        await session.commit()

    assert updated is not None
    membership, legacy = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.PAST_DUE
    assert _naive(membership.expires_at) == _naive(PERIOD_END)
    assert legacy.status == statuses.LEGACY_INACTIVE


@pytest.mark.anyio
async def test_subscription_deleted_cancels_membership(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_deleted",
            subscription_id="sub_1",
            provider_status="active",
            period_start=None,
            period_end=None,
            deleted=True,
        )
        await session.commit()

    membership, legacy = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.CANCELED
    assert legacy.status == statuses.LEGACY_INACTIVE


@pytest.mark.anyio
async def test_subscription_event_fence_and_unknown_subscription(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        first = await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_1",
            subscription_id="sub_1",
            provider_status="past_due",
            period_start=None,
            period_end=None,
        )
        replay = await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_1",
            subscription_id="sub_1",
            provider_status="active",
            period_start=None,
            period_end=None,
        )
        unknown = await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_2",
            subscription_id="sub_missing",
            provider_status="active",
            period_start=None,
            period_end=None,
        )
        await session.commit()

    assert first is not None
    assert replay is None
    assert unknown is None
    membership, _ = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.PAST_DUE


@pytest.mark.anyio
async def test_failed_invoice_keeps_renewed_at(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        await membership_service.apply_invoice_payment(
            session,
            event_id="evt_invoice_failed",
            subscription_id="sub_1",
            succeeded=False,
            paid_at=PERIOD_START,
            period_end=None,
        )
        await session.commit()

    membership, _ = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.PAST_DUE
    assert _naive(membership.renewed_at) == _naive(NOW)


@pytest.mark.anyio
async def test_older_checkout_redelivered_after_newer_event_is_a_no_op(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        await membership_service.apply_invoice_payment(
            session,
            event_id="evt_invoice_failed",
            subscription_id="sub_1",
            succeeded=False,
            paid_at=None,
            period_end=None,
        )
        await session.commit()

    async with async_session_maker() as session:
        change = await membership_service.apply_checkout_completion(
            session, _completion(billing_world), now=datetime(2024, 3, 20, tzinfo=timezone.utc)
        )
        await session.commit()

    assert change.applied is False
    membership, legacy = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.PAST_DUE
    assert membership.stripe_last_event_id == "evt_invoice_failed"
    assert _naive(membership.renewed_at) == _naive(NOW)
    assert legacy.status == statuses.LEGACY_INACTIVE


@pytest.mark.anyio
async def test_older_subscription_event_redelivered_after_newer_event_is_a_no_op(
    async_session_maker, billing_world
):
    await _seed_membership(async_session_maker, billing_world)

    async def apply(event_id, provider_status):
        async with async_session_maker() as session:
            result = await membership_service.apply_subscription_change(
                session,
                event_id=event_id,
                subscription_id="sub_1",
                provider_status=provider_status,
                period_start=None,
                period_end=None,
            )
            await session.commit()
        return result

    assert await apply("evt_sub_canceled", "canceled") is not None
    assert await apply("evt_sub_reactivated", "active") is not None
    assert await apply("evt_sub_canceled", "canceled") is None

    membership, _ = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.ACTIVE
    async with async_session_maker() as session:
        applied = (
            await session.execute(
                sa.select(GroupMembershipEvent.stripe_event_id).where(
                    GroupMembershipEvent.membership_id == membership.membership_id
                )
            )
        ).scalars().all()
    assert sorted(applied) == ["evt_checkout_1", "evt_sub_canceled", "evt_sub_reactivated"]


@pytest.mark.anyio
@pytest.mark.parametrize("invoice_first", [True, False])
async def test_invoice_and_subscription_update_converge_in_any_order(
    async_session_maker, billing_world, invoice_first
):
    await _seed_membership(async_session_maker, billing_world)

    async def invoice(session):
        await membership_service.apply_invoice_payment(
            session,
            event_id="evt_invoice_paid",
            subscription_id="sub_1",
            succeeded=True,
            paid_at=PERIOD_START,
            period_end=PERIOD_END,
            payment_intent_id="pi_2",
        )

    async def subscription(session):
        await membership_service.apply_subscription_change(
            session,
            event_id="evt_sub_renewed",
            subscription_id="sub_1",
            provider_status="active",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
        )

    steps = [invoice, subscription] if invoice_first else [subscription, invoice]
    for step in steps:
        async with async_session_maker() as session:
            await step(session)
            await session.commit()

    membership, legacy = await _load(async_session_maker, billing_world)
    assert membership.status == statuses.ACTIVE
    assert _naive(membership.expires_at) == _naive(PERIOD_END)
    assert _naive(membership.renewed_at) == _naive(PERIOD_START)
    assert legacy.status == statuses.LEGACY_ACTIVE


@pytest.mark.anyio
async def test_sync_member_status_updates_existing_row(async_session_maker, billing_world):
    async with async_session_maker() as session:
        await membership_service.sync_member_status(
            session,
            group_id=billing_world.group_id,
            user_id=billing_world.member_id,
            membership_status=statuses.ACTIVE,
            now=NOW,
        )
        row = await membership_service.sync_member_status(
            session,
            group_id=billing_world.group_id,
            user_id=billing_world.member_id,
            membership_status=statuses.CANCELED,
            now=PERIOD_START,
        )
        await session.commit()

    assert row.status == statuses.LEGACY_INACTIVE
    assert _naive(row.last_active) == _naive(NOW)

    async with async_session_maker() as session:
        count = (await session.execute(sa.select(sa.func.count()).select_from(GroupMemberStatus))).scalar_one()
    assert count == 1


@pytest.mark.anyio
async def test_membership_lookups(async_session_maker, billing_world):
    await _seed_membership(async_session_maker, billing_world)

    async with async_session_maker() as session:
        by_sub = await membership_service.find_membership_by_subscription(session, "sub_1")
        by_pi = await membership_service.find_membership_by_payment_intent(session, "pi_1")
        by_customer = await membership_service.find_latest_membership_by_customer(session, "cus_1")
        total = (await session.execute(sa.select(sa.func.count()).select_from(GroupMembership))).scalar_one()

    assert by_sub.membership_id == by_pi.membership_id == by_customer.membership_id
    assert total == 1


@pytest.mark.anyio
async def test_cancel_superseded_subscription_calls_stripe_with_idempotency_key():
    calls: list[tuple] = []

    class StubStripe:
        async def cancel_subscription(self, subscription_id, *, idempotency_key=None):
            calls.append((subscription_id, idempotency_key))

    policy = CancelSupersededSubscription(StubStripe())
    membership = GroupMembership(membership_id="m-1", group_id="g", user_id="u")
    await policy.handle(
        membership, previous_subscription_id="sub_old", new_subscription_id="sub_new", event_id="evt_1"
    )

    assert calls[0][0] == "sub_old"
    assert calls[0][1]


@pytest.mark.anyio
async def test_cancel_superseded_subscription_swallows_stripe_errors():
    class BrokenStripe:
        async def cancel_subscription(self, subscription_id, *, idempotency_key=None):
            raise RuntimeError("boom")

    policy = CancelSupersededSubscription(BrokenStripe())
    membership = GroupMembership(membership_id="m-1", group_id="g", user_id="u")
    await policy.handle(
        membership, previous_subscription_id="sub_old", new_subscription_id="sub_new", event_id="evt_1"
    )


def test_supersession_policy_follows_setting():
    keep = resolve_supersession_policy(SimpleNamespace(stripe_cancel_superseded_subscriptions=False), None)
    cancel = resolve_supersession_policy(SimpleNamespace(stripe_cancel_superseded_subscriptions=True), None)

    assert isinstance(keep, KeepSupersededSubscription)
    assert isinstance(cancel, CancelSupersededSubscription)
