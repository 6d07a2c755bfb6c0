"""
Engagement API Routes — דשבורד מעורבות לכל tenant (חתונה).
"""
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import RecipientNotFoundError
from app.db.database import get_db
from app.domain.services.engagement_service import (
    ChannelReadRate,
    EngagementService,
    RecipientEngagement,
    StaleInvitation,
    TenantEngagementStats,
)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


@router.get(
    "/{tenant_id}/engagement/recipients/{recipient_id}",
    response_model=RecipientEngagement,
)
async def get_recipient_engagement(
    tenant_id: str,
    recipient_id: str,
    db: AsyncSession = Depends(get_db),
) -> RecipientEngagement:
    """ציר המעורבות של נמען: הזמנה → מסירה → קריאה → קישור → RSVP"""
    engagement = await EngagementService(db).recipient_timeline(tenant_id, recipient_id)
    if engagement is None:
        raise RecipientNotFoundError(tenant_id, recipient_id)
    return engagement


@router.get("/{tenant_id}/engagement/stats", response_model=TenantEngagementStats)
async def get_engagement_stats(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
) -> TenantEngagementStats:
    return await EngagementService(db).tenant_stats(tenant_id)


@router.get("/{tenant_id}/engagement/channels", response_model=List[ChannelReadRate])
async def get_channel_read_rates(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[ChannelReadRate]:
    """שיעורי מסירה וקריאה — WhatsApp / SMS / Email"""
    return await EngagementService(db).channel_read_rates(tenant_id)


@router.get("/{tenant_id}/engagement/stale", response_model=List[StaleInvitation])
async def get_stale_invitations(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[StaleInvitation]:
    """הזמנות שנשלחו ועוד לא נקראו — מועמדים לתזכורת"""
    return await EngagementService(db).stale_invitations(tenant_id)
