"""Work out which group, membership and user a Stripe object belongs to.

Strategies run in a fixed order. Each one may fill any field still missing;
a field set by an earlier strategy is never overwritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.memberships import service as membership_service
from wns_payments.domain.memberships.db_models import GroupMembership
from wns_payments.domain.revenue import service as revenue_service
from wns_payments.shared.stripe_payloads import read_metadata_string

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextQuery:
    payment_intent_id: str | None = None
    charge_id: str | None = None
    customer_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedContext:
    group_id: str | None = None
    membership_id: str | None = None
    user_id: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.group_id and self.membership_id and self.user_id)

    def merge(self, other: ResolvedContext | None) -> ResolvedContext:
        if other is None:
            return self
        return replace(
            self,
            group_id=self.group_id or other.group_id,
            membership_id=self.membership_id or other.membership_id,
            user_id=self.user_id or other.user_id,
        )


ContextStrategy = Callable[[AsyncSession, ContextQuery], Awaitable[ResolvedContext | None]]


def _from_membership(membership: GroupMembership | None) -> ResolvedContext | None:
    if membership is None:
        return None
    return ResolvedContext(
        group_id=membership.group_id,
        membership_id=membership.membership_id,
        user_id=membership.user_id,
    )


async def by_payment_intent(session: AsyncSession, query: ContextQuery) -> ResolvedContext | None:
    if not query.payment_intent_id:
        return None
    membership = await membership_service.find_membership_by_payment_intent(
        session, query.payment_intent_id
    )
    return _from_membership(membership)


async def by_customer(session: AsyncSession, query: ContextQuery) -> ResolvedContext | None:
    if not query.customer_id:
        return None
    membership = await membership_service.find_latest_membership_by_customer(session, query.customer_id)
    return _from_membership(membership)


async def by_prior_ledger_entry(session: AsyncSession, query: ContextQuery) -> ResolvedContext | None:
    if not query.charge_id:
        return None
    entry = await revenue_service.find_entry_by_balance_transaction(session, query.charge_id)
    if entry is None:
        return None
    return ResolvedContext(
        group_id=entry.group_id,
        membership_id=entry.membership_id,
        user_id=entry.user_id,
    )


async def by_metadata(session: AsyncSession, query: ContextQuery) -> ResolvedContext | None:
    metadata = query.metadata or {}
    resolved = ResolvedContext(
        group_id=read_metadata_string(metadata, "groupId"),
        membership_id=read_metadata_string(metadata, "membershipId"),
        user_id=read_metadata_string(metadata, "userId"),
    )
    if not (resolved.group_id or resolved.membership_id or resolved.user_id):
        return None
    return resolved


CONTEXT_STRATEGIES: tuple[tuple[str, ContextStrategy], ...] = (
    ("payment_intent", by_payment_intent),
    ("customer", by_customer),
    ("ledger_charge", by_prior_ledger_entry),
    ("metadata", by_metadata),
)


async def resolve_context(
    session: AsyncSession,
    query: ContextQuery,
    *,
    strategies: tuple[tuple[str, ContextStrategy], ...] = CONTEXT_STRATEGIES,
) -> ResolvedContext:
    resolved = ResolvedContext()
    matched: list[str] = []
    for name, strategy in strategies:
        if resolved.complete:
            break
        found = await strategy(session, query)
        if found is None:
            continue
        matched.append(name)
        resolved = resolved.merge(found)
    if resolved.group_id is None:
        logger.info(
            "webhook_context_unresolved",
            extra={
                "extra": {
                    "payment_intent_id": query.payment_intent_id,
                    "charge_id": query.charge_id,
                    "customer_id": query.customer_id,
                }
            },
        )
    else:
        logger.debug(
            "webhook_context_resolved",
            extra={"extra": {"group_id": resolved.group_id, "strategies": matched}},
        )
    return resolved
