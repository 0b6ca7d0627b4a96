from __future__ import annotations

import logging

import sqlalchemy as sa
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.api.identity import require_current_user_id
from wns_payments.domain.errors import DomainError
from wns_payments.domain.groups.db_models import Group, GroupAdmin
from wns_payments.domain.revenue import service as revenue_service
from wns_payments.domain.revenue.schemas import (
    CurrencySummaryResponse,
    EarningsResponse,
    RevenueEntryResponse,
)
from wns_payments.infra.db import get_db_session
from wns_payments.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def parse_limit(raw: str | None, *, default: int, maximum: int) -> int:
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return min(value, maximum)


def parse_offset(raw: str | None) -> int:
    try:
        value = int(raw) if raw else 0
    except ValueError:
        return 0
    return max(value, 0)


async def can_view_earnings(session: AsyncSession, group: Group, user_id: str) -> bool:
    if group.owner_id == user_id:
        return True
    stmt = sa.select(GroupAdmin.group_admin_id).where(
        GroupAdmin.group_id == group.group_id,
        GroupAdmin.user_id == user_id,
    )
    return (await session.execute(stmt.limit(1))).scalar_one_or_none() is not None


@router.get("/v1/payments/stripe/earnings", response_model=EarningsResponse)
async def get_group_earnings(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> EarningsResponse:
    user_id = require_current_user_id(http_request)
    app_settings = getattr(http_request.app.state, "app_settings", None) or settings
    params = http_request.query_params

    group_id = (params.get("groupId") or "").strip()
    if not group_id:
        raise DomainError(detail="GROUP_ID_REQUIRED", title="Invalid earnings request", status_code=400)

    group = await session.get(Group, group_id)
    if group is None:
        raise DomainError(detail="GROUP_NOT_FOUND", title="Group not found", status_code=404)
    if not await can_view_earnings(session, group, user_id):
        logger.info(
            "earnings_access_denied",
            extra={"extra": {"group_id": group_id, "user_id": user_id}},
        )
        raise DomainError(detail="FORBIDDEN", title="Forbidden", status_code=403)

    limit = parse_limit(
        params.get("limit"),
        default=app_settings.earnings_default_limit,
        maximum=app_settings.earnings_max_limit,
    )
    summary = await revenue_service.get_group_revenue_summary(session, group_id)
    entries = await revenue_service.list_revenue_entries(
        session, group_id, limit=limit, offset=parse_offset(params.get("offset"))
    )
    return EarningsResponse(
        group_id=group_id,
        summary=[CurrencySummaryResponse.model_validate(item) for item in summary],
        entries=[RevenueEntryResponse.model_validate(entry) for entry in entries],
    )
