from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.groups.db_models import Group, User
from wns_payments.infra.db import add_after_commit

logger = logging.getLogger(__name__)


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency.upper()}"


def render_membership_receipt(
    *, recipient_name: str | None, group_name: str, amount_cents: int, currency: str, description: str | None
) -> tuple[str, str]:
    subject = f"Your {group_name} membership receipt"
    lines = [
        f"Hi {recipient_name or 'there'},",
        "",
        f"Thanks for supporting {group_name}. We received your payment of "
        f"{format_amount(amount_cents, currency)}.",
    ]
    if description:
        lines.extend(["", description])
    lines.extend(["", "Keep this email for your records."])
    return subject, "\n".join(lines)


@dataclass(frozen=True)
class MembershipReceipt:
    recipient: str
    subject: str
    body: str
    user_id: str
    group_id: str


class ReceiptNotifier:
    """Builds membership receipts inside the webhook transaction and mails them after commit."""

    def __init__(self, email_adapter: Any) -> None:
        self.email_adapter = email_adapter

    async def prepare_membership_receipt(
        self,
        session: AsyncSession,
        *,
        user_id: str | None,
        group_id: str,
        amount_cents: int,
        currency: str,
        description: str | None = None,
    ) -> MembershipReceipt | None:
        if not user_id or self.email_adapter is None:
            return None
        user = await session.get(User, user_id)
        group = await session.get(Group, group_id)
        if user is None or not user.email or group is None:
            logger.info("receipt_recipient_missing", extra={"extra": {"user_id": user_id, "group_id": group_id}})
            return None
        subject, body = render_membership_receipt(
            recipient_name=user.name,
            group_name=group.name,
            amount_cents=amount_cents,
            currency=currency,
            description=description,
        )
        return MembershipReceipt(
            recipient=user.email, subject=subject, body=body, user_id=user_id, group_id=group_id
        )

    async def deliver(self, receipt: MembershipReceipt) -> bool:
        """Send a prepared receipt. Never raises into the caller."""
        log_extra = {"user_id": receipt.user_id, "group_id": receipt.group_id}
        try:
            delivered = await self.email_adapter.send_email(receipt.recipient, receipt.subject, receipt.body)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "receipt_send_failed",
                extra={"extra": {**log_extra, "reason": type(exc).__name__}},
            )
            return False
        if delivered:
            logger.info("receipt_sent", extra={"extra": log_extra})
        return bool(delivered)

    async def queue_membership_receipt(self, session: AsyncSession, **receipt_fields: Any) -> bool:
        """Prepare a receipt now and deliver it once the session's transaction commits.

        Lookup errors propagate so the caller's savepoint rolls back.
        """
        receipt = await self.prepare_membership_receipt(session, **receipt_fields)
        if receipt is None:
            return False

        async def deliver_receipt() -> None:
            await self.deliver(receipt)

        add_after_commit(session, deliver_receipt)
        return True
