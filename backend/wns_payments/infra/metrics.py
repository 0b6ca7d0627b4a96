import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool, service_name: str | None = None) -> None:
        self.enabled = enabled
        self.service_name = service_name
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.stripe_webhook_events = None
            self.stripe_webhook_circuit_open = None
            self.webhook_events = None
            self.webhook_errors = None
            self.revenue_entries = None
            self.payout_upserts = None
            self.side_effects = None
            self.email_adapter_outcomes = None
            self.http_5xx = None
            self.http_latency = None
            self.circuit_state = None
            return

        self.webhook_events = Counter(
            "webhook_events_total",
            "Webhook events processed by result.",
            ["result"],
            registry=self.registry,
        )
        self.stripe_webhook_events = Counter(
            "stripe_webhook_events_total",
            "Stripe webhook outcomes by event type and result.",
            ["event_type", "outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook errors by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.stripe_webhook_circuit_open = Counter(
            "stripe_webhook_circuit_open_total",
            "Stripe webhook circuit breaker opened.",
            registry=self.registry,
        )
        self.revenue_entries = Counter(
            "revenue_ledger_entries_total",
            "Revenue ledger writes by entry type and whether a row was inserted.",
            ["entry_type", "created"],
            registry=self.registry,
        )
        self.payout_upserts = Counter(
            "payout_upserts_total",
            "Payout reconciliations by resulting status.",
            ["status", "action"],
            registry=self.registry,
        )
        self.side_effects = Counter(
            "ledger_side_effects_total",
            "Side effects triggered by ledger inserts by name and result.",
            ["name", "result"],
            registry=self.registry,
        )
        self.email_adapter_outcomes = Counter(
            "email_adapter_outcomes_total",
            "Email adapter send attempts by outcome.",
            ["status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency by route template.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half_open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_webhook(self, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(result=result).inc()

    def record_stripe_webhook(self, event_type: str | None, outcome: str) -> None:
        if not self.enabled or self.stripe_webhook_events is None:
            return
        safe_type = event_type or "unknown"
        safe_outcome = outcome or "unknown"
        self.stripe_webhook_events.labels(event_type=safe_type, outcome=safe_outcome).inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        safe_type = error_type or "unknown"
        self.webhook_errors.labels(type=safe_type).inc()

    def record_stripe_circuit_open(self) -> None:
        if not self.enabled or self.stripe_webhook_circuit_open is None:
            return
        self.stripe_webhook_circuit_open.inc()

    def record_revenue_entry(self, entry_type: str, created: bool) -> None:
        if not self.enabled or self.revenue_entries is None:
            return
        self.revenue_entries.labels(entry_type=entry_type, created=str(created).lower()).inc()

    def record_payout_upsert(self, status: str, action: str) -> None:
        if not self.enabled or self.payout_upserts is None:
            return
        self.payout_upserts.labels(status=status or "unknown", action=action).inc()

    def record_side_effect(self, name: str, result: str) -> None:
        if not self.enabled or self.side_effects is None:
            return
        self.side_effects.labels(name=name or "unknown", result=result).inc()

    def record_email_adapter(self, status: str) -> None:
        if not self.enabled or self.email_adapter_outcomes is None:
            return
        safe_status = status or "unknown"
        self.email_adapter_outcomes.labels(status=safe_status).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(duration_seconds, 0.0)
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool, *, service_name: str | None = None) -> Metrics:
    metrics._configure(enabled, service_name=service_name)
    return metrics
