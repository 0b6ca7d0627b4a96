from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from wns_payments.domain.revenue import service as revenue_service
from wns_payments.domain.revenue.db_models import GroupRevenueEntry


def _entry(world, **overrides) -> revenue_service.RevenueEntryInput:
    values = dict(
        group_id=world.group_id,
        user_id=world.member_id,
        type=revenue_service.MEMBERSHIP_CHARGE,
        amount_gross_cents=5000,
        currency="eur",
        occurred_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        stripe_event_id="evt_charge_1",
        stripe_object_id="cs_1",
    )
    values.update(overrides)
    return revenue_service.RevenueEntryInput(**values)


@pytest.mark.parametrize(
    "gross,net,fee,expected",
    [
        (5000, None, None, (5000, 0)),
        (5000, None, 150, (4850, 150)),
        (5000, 4800, None, (4800, 200)),
        (5000, 5200, None, (5200, 0)),
        (-2000, None, None, (-2000, 0)),
        (5000, 4700, 300, (4700, 300)),
    ],
)
def test_resolve_amounts(gross, net, fee, expected):
    assert revenue_service.resolve_amounts(gross, net, fee) == expected


@pytest.mark.anyio
async def test_record_entry_is_idempotent_per_event_and_object(async_session_maker, billing_world):
    async with async_session_maker() as session:
        first = await revenue_service.record_revenue_entry(session, _entry(billing_world))
        second = await revenue_service.record_revenue_entry(
            session, _entry(billing_world, amount_gross_cents=9999)
        )
        await session.commit()

    assert first.created is True
    assert second.created is False
    assert second.entry.entry_id == first.entry.entry_id

    async with async_session_maker() as session:
        rows = (await session.execute(sa.select(GroupRevenueEntry))).scalars().all()
    assert len(rows) == 1
    assert rows[0].amount_gross_cents == 5000
    assert rows[0].currency == "EUR"
    assert rows[0].amount_net_cents == 5000
    assert rows[0].fee_cents == 0


@pytest.mark.anyio
async def test_same_event_different_object_creates_second_entry(async_session_maker, billing_world):
    async with async_session_maker() as session:
        await revenue_service.record_revenue_entry(session, _entry(billing_world))
        other = await revenue_service.record_revenue_entry(
            session, _entry(billing_world, stripe_object_id="cs_2")
        )
        await session.commit()

    assert other.created is True


@pytest.mark.anyio
async def test_unknown_entry_type_is_rejected(async_session_maker, billing_world):
    async with async_session_maker() as session:
        with pytest.raises(ValueError):
            await revenue_service.record_revenue_entry(session, _entry(billing_world, type="tip"))


@pytest.mark.anyio
async def test_side_effects_run_only_when_entry_is_created(async_session_maker, billing_world):
    calls: list[str] = []

    async def on_created(entry):
        calls.append(entry.stripe_event_id)

    async with async_session_maker() as session:
        await revenue_service.record_revenue_entry_with_side_effects(
            session, _entry(billing_world), on_created=[on_created]
        )
        await revenue_service.record_revenue_entry_with_side_effects(
            session, _entry(billing_world), on_created=[on_created]
        )
        await session.commit()

    assert calls == ["evt_charge_1"]


@pytest.mark.anyio
async def test_failing_side_effect_does_not_block_others(async_session_maker, billing_world):
    calls: list[str] = []

    async def broken(entry):
        raise RuntimeError("mail server down")

    async def recorder(entry):
        calls.append(entry.entry_id)

    async with async_session_maker() as session:
        recorded = await revenue_service.record_revenue_entry_with_side_effects(
            session, _entry(billing_world), on_created=[broken, recorder]
        )
        await session.commit()

    assert recorded.created is True
    assert calls == [recorded.entry.entry_id]


@pytest.mark.anyio
async def test_failing_side_effect_rolls_back_only_its_own_writes(async_session_maker, billing_world):
    calls: list[str] = []

    async def write_then_fail(entry):
        await revenue_service.record_revenue_entry(
            session, _entry(billing_world, stripe_object_id="cs_partial")
        )
        raise RuntimeError("coupon table locked")

    async def recorder(entry):
        calls.append(entry.stripe_object_id)

    async with async_session_maker() as session:
        recorded = await revenue_service.record_revenue_entry_with_side_effects(
            session, _entry(billing_world), on_created=[write_then_fail, recorder]
        )
        await session.commit()

    assert recorded.created is True
    assert calls == ["cs_1"]
    async with async_session_maker() as session:
        rows = (await session.execute(sa.select(GroupRevenueEntry.stripe_object_id))).scalars().all()
    assert rows == ["cs_1"]


@pytest.mark.anyio
async def test_summary_nets_charges_refunds_and_chargebacks(async_session_maker, billing_world):
    async with async_session_maker() as session:
        await revenue_service.record_revenue_entry(session, _entry(billing_world, fee_cents=200))
        await revenue_service.record_revenue_entry(
            session,
            _entry(
                billing_world,
                type=revenue_service.MEMBERSHIP_REFUND,
                amount_gross_cents=-2000,
                stripe_event_id="evt_refund",
                stripe_object_id="ch_1",
            ),
        )
        await revenue_service.record_revenue_entry(
            session,
            _entry(
                billing_world,
                type=revenue_service.MEMBERSHIP_CHARGEBACK,
                amount_gross_cents=-1000,
                stripe_event_id="evt_dispute",
                stripe_object_id="dp_1",
            ),
        )
        await revenue_service.record_revenue_entry(
            session,
            _entry(billing_world, currency="usd", stripe_event_id="evt_usd", stripe_object_id="cs_usd"),
        )
        await session.commit()

    async with async_session_maker() as session:
        summary = await revenue_service.get_group_revenue_summary(session, billing_world.group_id)

    assert [item.currency for item in summary] == ["EUR", "USD"]
    eur = summary[0]
    assert eur.gross_cents == 5000 - 2000 - 1000
    assert eur.fee_cents == 200
    assert eur.net_cents == 4800 - 2000 - 1000
    assert eur.count == 3
    assert summary[1].gross_cents == 5000


@pytest.mark.anyio
async def test_list_entries_newest_first_with_paging(async_session_maker, billing_world):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    async with async_session_maker() as session:
        for index in range(3):
            await revenue_service.record_revenue_entry(
                session,
                _entry(
                    billing_world,
                    occurred_at=base + timedelta(days=index),
                    stripe_event_id=f"evt_{index}",
                    stripe_object_id=f"cs_{index}",
                ),
            )
        await session.commit()

    async with async_session_maker() as session:
        page = await revenue_service.list_revenue_entries(session, billing_world.group_id, limit=2)
        rest = await revenue_service.list_revenue_entries(session, billing_world.group_id, limit=2, offset=2)

    assert [entry.stripe_event_id for entry in page] == ["evt_2", "evt_1"]
    assert [entry.stripe_event_id for entry in rest] == ["evt_0"]


@pytest.mark.anyio
async def test_find_entry_by_balance_transaction(async_session_maker, billing_world):
    async with async_session_maker() as session:
        await revenue_service.record_revenue_entry(
            session, _entry(billing_world, stripe_balance_transaction="pi_123")
        )
        await session.commit()

    async with async_session_maker() as session:
        found = await revenue_service.find_entry_by_balance_transaction(session, "pi_123")
        missing = await revenue_service.find_entry_by_balance_transaction(session, "pi_unknown")

    assert found is not None
    assert found.group_id == billing_world.group_id
    assert missing is None
