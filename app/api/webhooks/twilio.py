"""
Twilio Status Callback Webhook — עדכוני סטטוס מסירה להודעות יוצאות.

Twilio שולח POST application/x-www-form-urlencoded לכל שינוי סטטוס
(queued → sent → delivered → read / failed). החתימה מחושבת על ה-URL
המלא כפי ש-Twilio פנה אליו + שדות ה-form, ולכן מאחורי proxy חובה
להגדיר TWILIO_WEBHOOK_PUBLIC_BASE_URL (scheme+host ציבוריים).

קודי תשובה: 403 חתימה לא תקינה, 400 בקשה פגומה, 200 לכל השאר —
כולל כשלי אחסון, כדי ש-Twilio לא ינסה שוב בלולאה.
"""
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.status_callback_service import (
    StatusCallbackRequest,
    StatusCallbackService,
)
from app.domain.services.twilio.signature import SIGNATURE_HEADER

logger = get_logger(__name__)

router = APIRouter()


def _public_url(request: Request) -> str:
    """ה-URL שעליו Twilio חתם: host ציבורי, path ו-query של הבקשה"""
    base_url = settings.TWILIO_WEBHOOK_PUBLIC_BASE_URL
    if not base_url:
        return str(request.url)
    public = urlsplit(base_url)
    return urlunsplit(
        (public.scheme, public.netloc, request.url.path, request.url.query, "")
    )


@router.post(
    "/status",
    summary="Twilio message status callback",
    description="קליטת סטטוס מסירה (delivered / read / failed) ורישומו כאירוע מעקב.",
    tags=["Webhooks"],
)
async def twilio_status_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    raw_body = await request.body()
    callback = StatusCallbackRequest.from_raw(
        url=_public_url(request),
        raw_body=raw_body,
        signature=request.headers.get(SIGNATURE_HEADER),
    )

    result = await StatusCallbackService(db).handle(callback)

    return JSONResponse(
        status_code=result.http_status,
        content={"success": result.success, "outcome": result.outcome.value},
    )
