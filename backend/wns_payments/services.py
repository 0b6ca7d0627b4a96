from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from wns_payments.domain.memberships.supersession import SupersessionPolicy, resolve_supersession_policy
from wns_payments.domain.notifications.receipts import ReceiptNotifier
from wns_payments.domain.webhooks.dispatcher import WebhookDispatcher
from wns_payments.domain.webhooks.handlers import WebhookDependencies
from wns_payments.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from wns_payments.infra.metrics import Metrics, configure_metrics
from wns_payments.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    email_adapter: EmailAdapter | NoopEmailAdapter
    stripe_client: StripeClient
    metrics: Metrics
    supersession_policy: SupersessionPolicy
    receipt_notifier: ReceiptNotifier
    webhook_dispatcher: WebhookDispatcher


def build_webhook_dispatcher(
    *,
    supersession_policy: SupersessionPolicy | None = None,
    receipt_notifier: ReceiptNotifier | None = None,
) -> WebhookDispatcher:
    return WebhookDispatcher(
        WebhookDependencies(
            supersession_policy=supersession_policy,
            receipt_notifier=receipt_notifier,
        )
    )


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled, service_name=app_settings.app_name)
    email_adapter = resolve_email_adapter(app_settings)
    stripe_client = StripeClient(
        secret_key=app_settings.stripe_secret_key,
        webhook_secret=app_settings.stripe_webhook_secret,
    )
    supersession_policy = resolve_supersession_policy(app_settings, stripe_client)
    receipt_notifier = ReceiptNotifier(email_adapter)
    return AppServices(
        email_adapter=email_adapter,
        stripe_client=stripe_client,
        metrics=metrics_client,
        supersession_policy=supersession_policy,
        receipt_notifier=receipt_notifier,
        webhook_dispatcher=build_webhook_dispatcher(
            supersession_policy=supersession_policy,
            receipt_notifier=receipt_notifier,
        ),
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
