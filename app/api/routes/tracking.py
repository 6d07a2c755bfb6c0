"""
Tracking API Routes — רישום אירועי מעקב משירותים אחרים.

שירות השליחה רושם כאן INVITATION_SENT וכו' (עם ה-message_sid שהתקבל
מהספק), ועמוד האורחים רושם LINK_OPENED / RSVP_*. ה-metadata עובר
ולידציה מול סוג האירוע — שדה לא מוכר = 422.
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.tracking_event import Channel, DELIVERY_STATUS_EVENT_TYPES, EventType
from app.domain.services.event_store import TrackingEventStore

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class TrackingEventCreate(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    recipient_id: str = Field(min_length=1, max_length=64)
    event_type: EventType
    channel: Optional[Channel] = None
    metadata: Optional[dict[str, Any]] = None
    admin_triggered: bool = False


class TrackingEventResponse(BaseModel):
    id: str
    tenant_id: str
    recipient_id: str
    event_type: EventType
    channel: Optional[Channel]
    correlation_id: Optional[str]
    admin_triggered: bool
    timestamp: datetime

    class Config:
        from_attributes = True


@router.post(
    "/events",
    response_model=TrackingEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_tracking_event(
    payload: TrackingEventCreate,
    db: AsyncSession = Depends(get_db),
) -> TrackingEventResponse:
    if payload.event_type in DELIVERY_STATUS_EVENT_TYPES:
        # סטטוסי מסירה מגיעים רק מ-Twilio, דרך ה-webhook
        raise ValidationException(
            f"{payload.event_type.value} is recorded from provider callbacks only",
            field="event_type",
        )

    tracking_event = await TrackingEventStore(db).record_event(
        tenant_id=payload.tenant_id,
        recipient_id=payload.recipient_id,
        event_type=payload.event_type,
        channel=payload.channel,
        metadata=payload.metadata,
        admin_triggered=payload.admin_triggered,
    )
    logger.info(
        "Tracking event recorded",
        extra_data={
            "event_id": tracking_event.id,
            "tenant_id": tracking_event.tenant_id,
            "event_type": tracking_event.event_type.value,
        },
    )
    return TrackingEventResponse.model_validate(tracking_event)
