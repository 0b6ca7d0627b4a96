from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.webhooks.dispatcher import WebhookDispatcher
from wns_payments.domain.webhooks.handlers import WebhookDependencies
from wns_payments.domain.webhooks.normalizer import WebhookRejected, normalize_event
from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.infra.db import discard_after_commit, get_db_session, run_after_commit
from wns_payments.infra.logging import update_log_context
from wns_payments.infra.metrics import metrics
from wns_payments.settings import settings
from wns_payments.shared.circuit_breaker import CircuitBreakerOpenError

router = APIRouter()
logger = logging.getLogger(__name__)


def _stripe_client(request: Request):
    if getattr(request.app.state, "stripe_client", None):
        return request.app.state.stripe_client
    services = getattr(request.app.state, "services", None)
    if services and getattr(services, "stripe_client", None):
        return services.stripe_client
    return None


def _dispatcher(request: Request) -> WebhookDispatcher:
    dispatcher = getattr(request.app.state, "webhook_dispatcher", None)
    if dispatcher is None:
        services = getattr(request.app.state, "services", None)
        dispatcher = getattr(services, "webhook_dispatcher", None)
    if dispatcher is None:
        dispatcher = WebhookDispatcher(WebhookDependencies())
        request.app.state.webhook_dispatcher = dispatcher
    return dispatcher


def _webhook_secret(request: Request, stripe_client) -> str | None:
    secret = getattr(stripe_client, "webhook_secret", None)
    if secret:
        return secret
    app_settings = getattr(request.app.state, "app_settings", None) or settings
    return app_settings.stripe_webhook_secret


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code})


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(http_request: Request, session: AsyncSession = Depends(get_db_session)):
    payload = await http_request.body()
    sig_header = http_request.headers.get("Stripe-Signature")
    stripe_client = _stripe_client(http_request)

    event_type: str | None = None
    outcome = "error"
    try:
        try:
            event = await normalize_event(
                stripe_client,
                payload,
                sig_header,
                webhook_secret=_webhook_secret(http_request, stripe_client),
            )
        except CircuitBreakerOpenError as exc:
            metrics.record_webhook_error("stripe_unavailable")
            metrics.record_stripe_circuit_open()
            logger.warning("stripe_webhook_circuit_open", extra={"extra": {"reason": type(exc).__name__}})
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "STRIPE_UNAVAILABLE")
        except WebhookRejected as exc:
            metrics.record_webhook("rejected")
            metrics.record_webhook_error(exc.code.lower())
            if exc.status_code >= 500:
                logger.error("stripe_webhook_misconfigured", extra={"extra": {"reason": exc.code}})
            else:
                logger.warning("stripe_webhook_rejected", extra={"extra": {"reason": exc.code}})
            outcome = "rejected"
            return _error(exc.status_code, exc.code)

        event_type = event.type
        update_log_context(stripe_event_id=event.id, stripe_event_type=event.type)
        try:
            async with session.begin():
                result = await _dispatcher(http_request).dispatch(session, event)
        except Exception:  # noqa: BLE001
            discard_after_commit(session)
            logger.exception(
                "stripe_webhook_error",
                extra={"extra": {"stripe_event_id": event.id, "event_type": event.type}},
            )
            metrics.record_webhook("error")
            metrics.record_webhook_error("processing_error")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "WEBHOOK_HANDLER_ERROR")

        await run_after_commit(session)

        if not result.handled:
            metrics.record_webhook("ignored")
            outcome = "ignored"
            return {"received": True, "ignored": event.type}

        if result.duplicate:
            metrics.record_webhook("duplicate")
            outcome = "duplicate"
            return {"received": True}

        logger.info(
            "stripe_webhook_processed",
            extra={"extra": {"stripe_event_id": event.id, "event_type": event.type}},
        )
        metrics.record_webhook("processed")
        outcome = "processed"
        return {"received": True}
    finally:
        metrics.record_stripe_webhook(event_type, outcome)
