from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.webhooks.events import StripeEvent, StripeEventType, decode_event
from wns_payments.domain.webhooks.handlers import DEFAULT_HANDLERS, WebhookDependencies, WebhookHandler
from wns_payments.domain.webhooks.normalizer import NormalizedEvent
from wns_payments.domain.webhooks.service import claim_event

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BoundHandler = Callable[[AsyncSession, StripeEvent], Awaitable[None]]


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    handled: bool
    duplicate: bool = False


def build_dispatch_table(
    deps: WebhookDependencies,
    handlers: Mapping[StripeEventType, WebhookHandler] = DEFAULT_HANDLERS,
) -> Mapping[StripeEventType, BoundHandler]:
    """Bind every handler to ``deps`` and freeze the result.

    Raises ``RuntimeError`` when an event type has no handler.
    """
    missing = [event_type.value for event_type in StripeEventType if event_type not in handlers]
    if missing:
        raise RuntimeError(f"missing webhook handlers: {', '.join(sorted(missing))}")
    return MappingProxyType(
        {event_type: functools.partial(handlers[event_type], deps=deps) for event_type in StripeEventType}
    )


class WebhookDispatcher:
    def __init__(
        self,
        deps: WebhookDependencies,
        handlers: Mapping[StripeEventType, WebhookHandler] = DEFAULT_HANDLERS,
    ) -> None:
        self.deps = deps
        self.table = build_dispatch_table(deps, handlers)

    async def dispatch(self, session: AsyncSession, event: NormalizedEvent) -> DispatchResult:
        typed = decode_event(event.id, event.type, event.data)
        if typed is None:
            logger.info(
                "stripe_webhook_ignored",
                extra={"extra": {"stripe_event_id": event.id, "event_type": event.type}},
            )
            return DispatchResult(event_id=event.id, event_type=event.type, handled=False)
        if not await claim_event(session, event.id, event.type):
            logger.info(
                "stripe_webhook_duplicate",
                extra={"extra": {"stripe_event_id": event.id, "event_type": event.type}},
            )
            return DispatchResult(event_id=event.id, event_type=event.type, handled=True, duplicate=True)
        with tracer.start_as_current_span(
            "stripe_webhook.dispatch",
            attributes={"stripe.event_id": event.id, "stripe.event_type": event.type},
        ):
            await self.table[typed.event_type](session, typed)
        return DispatchResult(event_id=event.id, event_type=event.type, handled=True)
