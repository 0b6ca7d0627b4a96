from __future__ import annotations

import inspect
from typing import Any, Callable

import anyio

from wns_payments.settings import settings
from wns_payments.shared.circuit_breaker import CircuitBreaker


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
    "verify_",
)


stripe_circuit = CircuitBreaker(
    name="stripe",
    failure_threshold=settings.stripe_circuit_failure_threshold,
    recovery_time=settings.stripe_circuit_recovery_seconds,
    window_seconds=settings.stripe_circuit_window_seconds,
    half_open_max_calls=settings.stripe_circuit_half_open_max_calls,
    timeout_seconds=settings.stripe_request_timeout_seconds,
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        """Wrap the Stripe SDK for async callers.

        Passing ``None`` for a credential falls back to global settings. Calls
        that need a missing credential fail fast with ``ValueError``.
        """
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _prepare(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key
        if settings.stripe_api_version:
            self.stripe.api_version = settings.stripe_api_version

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    @staticmethod
    def _request_options(idempotency_key: str | None) -> dict[str, Any]:
        if idempotency_key:
            return {"idempotency_key": idempotency_key}
        return {}

    async def create_product(
        self,
        *,
        name: str,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {"name": name, "metadata": metadata or {}}
        if description:
            payload["description"] = description
        return await self._call(
            self.stripe.Product.create, **payload, **self._request_options(idempotency_key)
        )

    async def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        recurring_interval: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency.lower(),
            "metadata": metadata or {},
        }
        if recurring_interval:
            payload["recurring"] = {"interval": recurring_interval}
        return await self._call(
            self.stripe.Price.create, **payload, **self._request_options(idempotency_key)
        )

    async def create_coupon(
        self,
        *,
        name: str,
        percent_off: float | None = None,
        amount_off: int | None = None,
        currency: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {"name": name, "duration": "once", "metadata": metadata or {}}
        if percent_off is not None:
            payload["percent_off"] = percent_off
        else:
            payload["amount_off"] = amount_off
            payload["currency"] = (currency or settings.default_currency).lower()
        return await self._call(
            self.stripe.Coupon.create, **payload, **self._request_options(idempotency_key)
        )

    async def create_promotion_code(
        self,
        *,
        coupon_id: str,
        code: str,
        active: bool = True,
        max_redemptions: int | None = None,
        expires_at: int | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {
            "coupon": coupon_id,
            "code": code,
            "active": active,
            "metadata": metadata or {},
        }
        if max_redemptions is not None:
            payload["max_redemptions"] = max_redemptions
        if expires_at is not None:
            payload["expires_at"] = expires_at
        return await self._call(
            self.stripe.PromotionCode.create, **payload, **self._request_options(idempotency_key)
        )

    async def update_promotion_code(
        self,
        promotion_code_id: str,
        *,
        active: bool,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {"active": active}
        if metadata is not None:
            payload["metadata"] = metadata
        return await self._call(
            self.stripe.PromotionCode.modify,
            promotion_code_id,
            **payload,
            **self._request_options(idempotency_key),
        )

    async def create_membership_checkout_session(
        self,
        *,
        mode: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: dict[str, str],
        customer_email: str | None = None,
        promotion_code_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._prepare()
        payload: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
            "metadata": metadata,
        }
        # Stripe rejects allow_promotion_codes together with explicit discounts.
        if promotion_code_id:
            payload["discounts"] = [{"promotion_code": promotion_code_id}]
        else:
            payload["allow_promotion_codes"] = True
        if customer_email:
            payload["customer_email"] = customer_email
        return await self._call(
            self.stripe.checkout.Session.create, **payload, **self._request_options(idempotency_key)
        )

    async def cancel_subscription(self, subscription_id: str, *, idempotency_key: str | None = None) -> Any:
        self._prepare()
        return await self._call(
            self.stripe.Subscription.cancel,
            subscription_id,
            **self._request_options(idempotency_key),
        )

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        # Local HMAC check, not an upstream call.
        return self.stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.webhook_secret,
        )


def resolve_client(app_state: Any) -> Any:
    """Return the Stripe client bound to the app.

    ``app.state.stripe_client`` wins over ``app.state.services.stripe_client``
    so tests can swap in a stub after startup.
    """
    state = getattr(app_state, "state", app_state)
    client = getattr(state, "stripe_client", None)
    if client is not None:
        return client
    services = getattr(state, "services", None)
    if services is not None:
        client = getattr(services, "stripe_client", None)
        if client is not None:
            return client
    client = StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    state.stripe_client = client
    return client


def is_client_configured(client: Any) -> bool:
    if client is None:
        return False
    return bool(getattr(client, "configured", True))


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
