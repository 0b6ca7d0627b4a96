"""Tests for Stripe idempotency key generation and Stripe mutation safeguards."""
from __future__ import annotations

import hashlib
from types import SimpleNamespace

import pytest

from wns_payments.infra.stripe_client import call_stripe_client_method, is_mutating_method
from wns_payments.infra.stripe_idempotency import checkout_idempotency_key, make_stripe_idempotency_key


class TestMakeStripeIdempotencyKey:
    def test_same_inputs_produce_same_key(self):
        key_a = make_stripe_idempotency_key("tier_price", group_id="g-1", object_id="tier-1")
        key_b = make_stripe_idempotency_key("tier_price", group_id="g-1", object_id="tier-1")
        assert key_a == key_b

    def test_different_object_different_key(self):
        key_a = make_stripe_idempotency_key("tier_price", group_id="g-1", object_id="tier-1")
        key_b = make_stripe_idempotency_key("tier_price", group_id="g-1", object_id="tier-2")
        assert key_a != key_b

    def test_different_purpose_different_key(self):
        key_product = make_stripe_idempotency_key("tier_product", object_id="tier-1")
        key_price = make_stripe_idempotency_key("tier_price", object_id="tier-1")
        assert key_product != key_price

    def test_key_format_has_prefix_and_digest(self):
        key = make_stripe_idempotency_key("coupon_create", group_id="g-1", object_id="c-1")
        assert key.startswith("coupon-c-")
        digest = key[-32:]
        assert len(digest) == 32
        assert all(c in "0123456789abcdef" for c in digest)

    def test_key_length_within_stripe_limit(self):
        key = make_stripe_idempotency_key(
            "supersede_subscription",
            group_id="g" * 36,
            user_id="u" * 36,
            object_id="o" * 36,
            extra={"replaced_by": "s" * 64},
        )
        assert len(key) <= 255

    def test_extra_dict_key_order_is_stable(self):
        key_a = make_stripe_idempotency_key("tier_price", extra={"b": "2", "a": "1"})
        key_b = make_stripe_idempotency_key("tier_price", extra={"a": "1", "b": "2"})
        assert key_a == key_b

    def test_extra_nested_values_are_deterministic(self):
        key_a = make_stripe_idempotency_key("promo_update", extra={"payload": {"b": [2, 1], "a": "x"}})
        key_b = make_stripe_idempotency_key("promo_update", extra={"payload": {"a": "x", "b": [2, 1]}})
        assert key_a == key_b

    def test_user_id_included_in_key(self):
        assert make_stripe_idempotency_key("checkout", user_id="u-1") != make_stripe_idempotency_key("checkout")


def test_checkout_fallback_key_hashes_user_tier_and_quantity():
    expected = hashlib.sha256(b"user-1:tier-1:2").hexdigest()
    assert checkout_idempotency_key("user-1", "tier-1", 2) == expected
    assert checkout_idempotency_key("user-1", "tier-1", 3) != expected


@pytest.mark.parametrize(
    "method_name,mutating",
    [
        ("create_product", True),
        ("cancel_subscription", True),
        ("update_promotion_code", True),
        ("verify_webhook", False),
        ("retrieve_checkout_session", False),
        ("construct_event", False),
    ],
)
def test_mutating_method_detection(method_name, mutating):
    assert is_mutating_method(method_name) is mutating


class TestCallStripeClientMethodGuards:
    @pytest.mark.anyio
    async def test_mutation_without_idempotency_key_raises(self):
        class MockClient:
            async def create_product(self, **kwargs):
                return kwargs

        with pytest.raises(ValueError, match="requires idempotency_key"):
            await call_stripe_client_method(MockClient(), "create_product", name="Monthly")

    @pytest.mark.anyio
    async def test_mutation_with_idempotency_key_passes(self):
        observed: list[dict] = []

        class MockClient:
            async def create_product(self, **kwargs):
                observed.append(kwargs)
                return SimpleNamespace(id="prod_test")

        result = await call_stripe_client_method(
            MockClient(), "create_product", name="Monthly", idempotency_key="tier-pro-key"
        )

        assert result.id == "prod_test"
        assert observed[0]["idempotency_key"] == "tier-pro-key"

    @pytest.mark.anyio
    async def test_sync_verify_method_is_supported(self):
        client = SimpleNamespace(verify_webhook=lambda payload, signature: {"id": "evt_1"})

        result = await call_stripe_client_method(client, "verify_webhook", payload=b"{}", signature="sig")

        assert result == {"id": "evt_1"}

    @pytest.mark.anyio
    async def test_missing_method_raises_attribute_error(self):
        with pytest.raises(AttributeError):
            await call_stripe_client_method(SimpleNamespace(), "create_price", idempotency_key="k")
