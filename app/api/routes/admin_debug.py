"""
Admin Debug Endpoints — כלים דיאגנוסטיים למעקב מסירה ללא גישה ישירה ל-DB.

1. callbacks יתומים (dead-letter) — message_sid שלא נמצא לו אירוע שליחה
2. כל אירועי המעקב של message_sid בודד — דיבוג הודעה "תקועה"
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import NotFoundException
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.event_store import TrackingEventStore

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class OrphanCallbackResponse(BaseModel):
    """callback יתום בודד"""
    id: int
    message_sid: str
    message_status: str | None
    error_code: str | None
    payload: dict | None
    received_at: datetime

    class Config:
        from_attributes = True


class MessageTraceEvent(BaseModel):
    """אירוע מעקב בודד בשרשרת של הודעה"""
    id: str
    tenant_id: str
    recipient_id: str
    event_type: str
    channel: str | None
    metadata: dict | None = None
    timestamp: datetime


# ─── 1. dead-letter ─────────────────────────────────────────────────────────

@router.get(
    "/orphan-callbacks",
    response_model=list[OrphanCallbackResponse],
    summary="callbacks יתומים אחרונים",
    description=(
        "status callbacks שהגיעו עם message_sid ללא אירוע שליחה תואם. "
        "נשמרים ORPHAN_CALLBACK_RETENTION_HOURS ונמחקים ע\"י משימה תקופתית."
    ),
    responses={200: {"description": "רשימת callbacks, מהחדש לישן"}, **_AUTH_RESPONSES},
)
async def get_orphan_callbacks(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=50, ge=1, le=200, description="מספר רשומות מקסימלי"),
) -> list[OrphanCallbackResponse]:
    orphans = await TrackingEventStore(db).list_orphan_callbacks(limit=limit)
    return [OrphanCallbackResponse.model_validate(o) for o in orphans]


# ─── 2. מעקב הודעה ──────────────────────────────────────────────────────────

@router.get(
    "/messages/{message_sid}/events",
    response_model=list[MessageTraceEvent],
    summary="שרשרת אירועים של הודעה",
    description="אירוע השליחה וכל אירועי הסטטוס שנגזרו ממנו, לפי סדר כרונולוגי.",
    responses={
        200: {"description": "אירועי ההודעה"},
        404: {"description": "אין אירועים ל-message_sid"},
        **_AUTH_RESPONSES,
    },
)
async def get_message_events(
    message_sid: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    tenant_id: Optional[str] = Query(default=None, description="סינון לפי tenant"),
) -> list[MessageTraceEvent]:
    events = await TrackingEventStore(db).list_events_by_correlation(
        message_sid, tenant_id=tenant_id
    )
    if not events:
        raise NotFoundException("Message", message_sid)
    return [
        MessageTraceEvent(
            id=e.id,
            tenant_id=e.tenant_id,
            recipient_id=e.recipient_id,
            event_type=e.event_type.value,
            channel=e.channel.value if e.channel else None,
            metadata=e.event_metadata,
            timestamp=e.timestamp,
        )
        for e in events
    ]
