from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from wns_payments.domain.payouts import service as payout_service
from wns_payments.domain.payouts import statuses
from wns_payments.domain.payouts.db_models import GroupPayout, GroupPayoutSchedule

CREATED = int(datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp())
ARRIVAL = int(datetime(2024, 6, 3, tzinfo=timezone.utc).timestamp())


def _payout(**overrides):
    payout = {
        "id": "po_1",
        "object": "payout",
        "amount": 12000,
        "currency": "eur",
        "status": "paid",
        "created": CREATED,
        "arrival_date": ARRIVAL,
        "type": "bank_account",
        "destination": {"id": "ba_1", "object": "bank_account"},
        "balance_transaction": "txn_1",
        "metadata": {"groupId": "group-runners"},
    }
    payout.update(overrides)
    return payout


async def _load_payouts(async_session_maker):
    async with async_session_maker() as session:
        return (await session.execute(sa.select(GroupPayout))).scalars().all()


def test_payout_reference_reads_metadata_keys():
    ref = payout_service.PayoutReference.from_payout(
        _payout(
            metadata={
                "groupPayoutId": "gp-1",
                "groupId": "g-1",
                "groupPayoutScheduleId": "s-1",
                "stripeTransferId": "tr_1",
            }
        )
    )

    assert ref.stripe_payout_id == "po_1"
    assert ref.group_payout_id == "gp-1"
    assert ref.group_id == "g-1"
    assert ref.schedule_id == "s-1"
    assert ref.transfer_id == "tr_1"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("paid", statuses.PAID),
        ("IN_TRANSIT", statuses.IN_TRANSIT),
        ("failed", statuses.FAILED),
        ("canceled", statuses.CANCELED),
        ("pending", statuses.PENDING),
        ("something_new", statuses.PENDING),
        (None, statuses.PENDING),
    ],
)
def test_map_payout_status(raw, expected):
    assert statuses.map_payout_status(raw) == expected


def test_lookup_order_is_fixed():
    assert [name for name, _ in payout_service.PAYOUT_LOOKUPS] == [
        "group_payout_id",
        "stripe_payout_id",
        "transfer_id",
        "latest_for_group",
    ]


@pytest.mark.anyio
async def test_paid_payout_for_unknown_record_creates_it_and_clears_schedule(
    async_session_maker, billing_world
):
    async with async_session_maker() as session:
        record = await payout_service.upsert_payout_from_stripe(session, "evt_po_paid", _payout())
        await session.commit()

    assert record is not None
    payouts = await _load_payouts(async_session_maker)
    assert len(payouts) == 1
    payout = payouts[0]
    assert payout.status == statuses.PAID
    assert payout.amount_cents == 12000
    assert payout.currency == "EUR"
    assert payout.schedule_id == billing_world.schedule_id
    assert payout.completed_at.replace(tzinfo=None) == datetime(2024, 6, 3)
    assert payout.stripe_payout_id == "po_1"
    assert payout.metadata_json["stripe"]["destination"] == "ba_1"
    assert payout.metadata_json["stripe"]["balanceTransaction"] == "txn_1"

    async with async_session_maker() as session:
        schedule = await session.get(GroupPayoutSchedule, billing_world.schedule_id)
    assert schedule.next_payout_scheduled_at is None
    assert schedule.last_payout_at.replace(tzinfo=None) == datetime(2024, 6, 3)


@pytest.mark.anyio
async def test_payout_without_group_context_is_skipped(async_session_maker, billing_world):
    async with async_session_maker() as session:
        record = await payout_service.upsert_payout_from_stripe(session, "evt_po", _payout(metadata={}))
        await session.commit()

    assert record is None
    assert await _load_payouts(async_session_maker) == []


@pytest.mark.anyio
async def test_payout_lifecycle_updates_in_place_with_fence(async_session_maker, billing_world):
    async with async_session_maker() as session:
        await payout_service.upsert_payout_from_stripe(
            session, "evt_po_created", _payout(status="pending", arrival_date=None)
        )
        await session.commit()

    async with async_session_maker() as session:
        failed = await payout_service.upsert_payout_from_stripe(
            session,
            "evt_po_failed",
            _payout(status="failed", failure_code="account_closed", failure_message=None),
        )
        await session.commit()

    assert failed.status == statuses.FAILED
    assert failed.failure_reason == "account_closed"
    assert failed.completed_at is None

    async with async_session_maker() as session:
        replay = await payout_service.upsert_payout_from_stripe(
            session, "evt_po_failed", _payout(status="paid")
        )
        await session.commit()

    assert replay.status == statuses.FAILED
    payouts = await _load_payouts(async_session_maker)
    assert len(payouts) == 1

    async with async_session_maker() as session:
        schedule = await session.get(GroupPayoutSchedule, billing_world.schedule_id)
    assert schedule.next_payout_scheduled_at is not None


@pytest.mark.anyio
async def test_failed_payout_without_reason_uses_default(async_session_maker, billing_world):
    async with async_session_maker() as session:
        record = await payout_service.upsert_payout_from_stripe(
            session, "evt_po_failed", _payout(status="failed", arrival_date=None)
        )
        await session.commit()

    assert record.failure_reason == statuses.DEFAULT_FAILURE_REASON


@pytest.mark.anyio
async def test_lookup_by_group_payout_id_wins(async_session_maker, billing_world):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        older = GroupPayout(
            payout_id="gp-older",
            group_id=billing_world.group_id,
            amount_cents=100,
            initiated_at=now - timedelta(days=2),
        )
        newer = GroupPayout(
            payout_id="gp-newer",
            group_id=billing_world.group_id,
            amount_cents=200,
            initiated_at=now,
        )
        session.add_all([older, newer])
        await session.commit()

    async with async_session_maker() as session:
        record = await payout_service.upsert_payout_from_stripe(
            session,
            "evt_po",
            _payout(id="po_new", metadata={"groupPayoutId": "gp-older", "groupId": billing_world.group_id}),
        )
        await session.commit()

    assert record.payout_id == "gp-older"
    assert record.stripe_payout_id == "po_new"


@pytest.mark.anyio
async def test_legacy_group_only_metadata_lands_on_latest_payout(async_session_maker, billing_world):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        session.add_all(
            [
                GroupPayout(
                    payout_id="gp-older",
                    group_id=billing_world.group_id,
                    amount_cents=100,
                    initiated_at=now - timedelta(days=2),
                ),
                GroupPayout(
                    payout_id="gp-newer",
                    group_id=billing_world.group_id,
                    amount_cents=200,
                    initiated_at=now,
                ),
            ]
        )
        await session.commit()

    async with async_session_maker() as session:
        ref = payout_service.PayoutReference.from_payout(_payout(id="po_legacy"))
        record, matched_by = await payout_service.find_payout(session, ref)

    assert record.payout_id == "gp-newer"
    assert matched_by == "latest_for_group"


@pytest.mark.anyio
async def test_custom_lookup_chain_is_honoured(async_session_maker, billing_world):
    async with async_session_maker() as session:
        record = await payout_service.upsert_payout_from_stripe(
            session, "evt_po", _payout(), lookups=()
        )
        again = await payout_service.upsert_payout_from_stripe(
            session, "evt_po_2", _payout(id="po_2"), lookups=()
        )
        await session.commit()

    assert record.payout_id != again.payout_id
