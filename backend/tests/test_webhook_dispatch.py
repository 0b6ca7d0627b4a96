from types import MappingProxyType, SimpleNamespace

import pytest
import sqlalchemy as sa

from wns_payments.domain.webhooks import events
from wns_payments.domain.webhooks.db_models import ProcessedStripeEvent
from wns_payments.domain.webhooks.dispatcher import WebhookDispatcher, build_dispatch_table
from wns_payments.domain.webhooks.handlers import DEFAULT_HANDLERS, WebhookDependencies
from wns_payments.domain.webhooks.normalizer import (
    InvalidSignatureError,
    MissingSecretError,
    MissingSignatureError,
    NormalizedEvent,
    StripeNotConfiguredError,
    normalize_event,
    to_plain,
)
from wns_payments.shared.circuit_breaker import CircuitBreakerOpenError


def test_every_event_type_has_a_variant_and_handler():
    assert set(events.EVENT_VARIANTS) == set(events.StripeEventType)
    assert set(DEFAULT_HANDLERS) == set(events.StripeEventType)


def test_decode_known_event_returns_typed_variant():
    decoded = events.decode_event("evt_1", "charge.dispute.closed", {"id": "dp_1"})

    assert isinstance(decoded, events.DisputeClosed)
    assert decoded.event_type is events.StripeEventType.DISPUTE_CLOSED
    assert decoded.obj == {"id": "dp_1"}


@pytest.mark.parametrize("event_type", ["customer.created", "", None])
def test_decode_unknown_event_returns_none(event_type):
    assert events.decode_event("evt_1", event_type, {}) is None


def test_decoded_events_are_frozen():
    decoded = events.decode_event("evt_1", "payout.paid", {})
    with pytest.raises(AttributeError):
        decoded.event_id = "evt_2"


def test_dispatch_table_is_read_only_and_complete():
    table = build_dispatch_table(WebhookDependencies())

    assert isinstance(table, MappingProxyType)
    assert set(table) == set(events.StripeEventType)
    with pytest.raises(TypeError):
        table[events.StripeEventType.PAYOUT_PAID] = None


def test_dispatch_table_rejects_missing_handlers():
    partial = dict(DEFAULT_HANDLERS)
    partial.pop(events.StripeEventType.PAYOUT_CANCELED)

    with pytest.raises(RuntimeError, match="payout.canceled"):
        build_dispatch_table(WebhookDependencies(), partial)


@pytest.mark.anyio
async def test_dispatcher_routes_to_bound_handler_with_dependencies(async_session_maker):
    seen: list[tuple] = []
    deps = WebhookDependencies(receipt_notifier="stub")

    async def recorder(session, event, deps):
        seen.append((type(event).__name__, event.event_id, deps.receipt_notifier))

    handlers = {event_type: recorder for event_type in events.StripeEventType}
    dispatcher = WebhookDispatcher(deps, handlers)

    async with async_session_maker() as session:
        async with session.begin():
            result = await dispatcher.dispatch(session, NormalizedEvent(id="evt_1", type="payout.paid", data={}))
            ignored = await dispatcher.dispatch(
                session, NormalizedEvent(id="evt_2", type="customer.created", data={})
            )

    assert result.handled is True
    assert result.duplicate is False
    assert ignored.handled is False
    assert seen == [("PayoutPaid", "evt_1", "stub")]


@pytest.mark.anyio
async def test_dispatcher_skips_event_ids_already_processed(async_session_maker):
    calls: list[str] = []

    async def recorder(session, event, deps):
        calls.append(event.event_id)

    dispatcher = WebhookDispatcher(
        WebhookDependencies(), {event_type: recorder for event_type in events.StripeEventType}
    )
    first = NormalizedEvent(id="evt_a", type="payout.paid", data={})
    second = NormalizedEvent(id="evt_b", type="payout.failed", data={})

    results = []
    for event in (first, second, first):
        async with async_session_maker() as session:
            async with session.begin():
                results.append(await dispatcher.dispatch(session, event))

    assert calls == ["evt_a", "evt_b"]
    assert [result.duplicate for result in results] == [False, False, True]
    assert all(result.handled for result in results)
    async with async_session_maker() as session:
        rows = (await session.execute(sa.select(ProcessedStripeEvent.event_id))).scalars().all()
    assert sorted(rows) == ["evt_a", "evt_b"]


@pytest.mark.anyio
async def test_dispatcher_releases_claim_when_handler_fails(async_session_maker):
    attempts: list[str] = []

    async def flaky(session, event, deps):
        attempts.append(event.event_id)
        if len(attempts) == 1:
            raise RuntimeError("database hiccup")

    dispatcher = WebhookDispatcher(
        WebhookDependencies(), {event_type: flaky for event_type in events.StripeEventType}
    )
    event = NormalizedEvent(id="evt_retry", type="payout.paid", data={})

    with pytest.raises(RuntimeError):
        async with async_session_maker() as session:
            async with session.begin():
                await dispatcher.dispatch(session, event)
    async with async_session_maker() as session:
        async with session.begin():
            retried = await dispatcher.dispatch(session, event)

    assert retried.duplicate is False
    assert attempts == ["evt_retry", "evt_retry"]


def test_to_plain_unwraps_sdk_objects():
    class StripeObjectLike:
        def to_dict(self):
            return {"id": "evt_1", "data": {"object": {"amount": 1}}}

    assert to_plain(StripeObjectLike()) == {"id": "evt_1", "data": {"object": {"amount": 1}}}
    assert to_plain([{"a": (1, 2)}]) == [{"a": [1, 2]}]


def _verifying_client(event):
    return SimpleNamespace(verify_webhook=lambda payload, signature: event)


@pytest.mark.anyio
async def test_normalize_event_returns_id_type_and_object():
    client = _verifying_client(
        {"id": "evt_1", "type": "payout.paid", "data": {"object": {"id": "po_1"}}}
    )

    event = await normalize_event(client, b"{}", "t=1,v1=sig", webhook_secret="whsec_test")

    assert event == NormalizedEvent(id="evt_1", type="payout.paid", data={"id": "po_1"})


@pytest.mark.anyio
async def test_normalize_event_tolerates_missing_data():
    client = _verifying_client({"id": "evt_1", "type": "payout.paid"})

    event = await normalize_event(client, b"{}", "sig", webhook_secret="whsec_test")

    assert event.data == {}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "client,secret,signature,error",
    [
        (None, "whsec_test", "sig", StripeNotConfiguredError),
        (SimpleNamespace(configured=False), "whsec_test", "sig", StripeNotConfiguredError),
        (SimpleNamespace(), None, "sig", MissingSecretError),
        (SimpleNamespace(), "whsec_test", None, MissingSignatureError),
        (SimpleNamespace(), "whsec_test", "", MissingSignatureError),
    ],
)
async def test_normalize_event_checks_configuration_in_order(client, secret, signature, error):
    with pytest.raises(error):
        await normalize_event(client, b"{}", signature, webhook_secret=secret)


@pytest.mark.anyio
async def test_normalize_event_wraps_verification_failures():
    def reject(payload, signature):
        raise ValueError("No signatures found matching the expected signature for payload")

    with pytest.raises(InvalidSignatureError):
        await normalize_event(SimpleNamespace(verify_webhook=reject), b"{}", "sig", webhook_secret="whsec")


@pytest.mark.anyio
async def test_normalize_event_rejects_event_without_id():
    with pytest.raises(InvalidSignatureError):
        await normalize_event(_verifying_client({"type": "payout.paid"}), b"{}", "sig", webhook_secret="whsec")


@pytest.mark.anyio
async def test_normalize_event_propagates_open_circuit():
    def circuit_open(payload, signature):
        raise CircuitBreakerOpenError("circuit_open:stripe")

    with pytest.raises(CircuitBreakerOpenError):
        await normalize_event(SimpleNamespace(verify_webhook=circuit_open), b"{}", "sig", webhook_secret="whsec")


def test_rejection_codes_and_statuses():
    assert (StripeNotConfiguredError.code, StripeNotConfiguredError.status_code) == ("STRIPE_NOT_CONFIGURED", 503)
    assert (MissingSecretError.code, MissingSecretError.status_code) == ("WEBHOOK_SECRET_MISSING", 500)
    assert (MissingSignatureError.code, MissingSignatureError.status_code) == ("SIGNATURE_REQUIRED", 400)
    assert (InvalidSignatureError.code, InvalidSignatureError.status_code) == ("INVALID_SIGNATURE", 400)
