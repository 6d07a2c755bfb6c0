"""
מיפוי סטטוס הודעה של Twilio לסוג אירוע פנימי.

רק שלושה מעברים נרשמים: delivered, read ו-failed/undelivered.
סטטוסי ביניים של Twilio לא נרשמים. סטטוס לא מוכר מחזיר None עם
אזהרה בלוג — Twilio מוסיף סטטוסים עם הזמן וה-webhook לא אמור להיכשל בגללם.
"""
from typing import Optional

from app.core.logging import get_logger
from app.db.models.tracking_event import EventType

logger = get_logger(__name__)

_TRACKED_STATUSES: dict[str, EventType] = {
    "delivered": EventType.MESSAGE_DELIVERED,
    "read": EventType.MESSAGE_READ,
    "failed": EventType.MESSAGE_FAILED,
    "undelivered": EventType.MESSAGE_FAILED,
}

# סטטוסים פנימיים של Twilio — מוכרים, אבל לא מעבר שמעניין את הדשבורד
_IGNORED_STATUSES = frozenset({
    "accepted",
    "scheduled",
    "queued",
    "sending",
    "sent",
    "receiving",
    "received",
    "canceled",
})


def map_provider_status(status: Optional[str]) -> Optional[EventType]:
    normalized = (status or "").strip().lower()
    event_type = _TRACKED_STATUSES.get(normalized)
    if event_type is not None:
        return event_type

    if normalized not in _IGNORED_STATUSES:
        logger.warning(
            "Unknown Twilio message status",
            extra_data={"status": normalized},
        )
    return None
