"""
Tracking Event Model — יומן אירועים append-only לכל נמען בחתונה.

מקור האמת היחיד להיסטוריית המעורבות של אורחים: שליחת הזמנה, מסירה,
קריאה, פתיחת קישור, RSVP. אירוע לא משתנה אחרי יצירה — תיקון נעשה
ע"י הוספת אירוע חדש.

אין "סטטוס נוכחי" להודעה: כל מעבר (delivered / read / failed) הוא שורה
נפרדת, וה-unique index החלקי מבטיח שורה אחת לכל
(tenant, message_sid, event_type) גם כש-callbacks כפולים מגיעים במקביל.
"""
import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Index, String, event, text
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class EventType(str, enum.Enum):
    """סוגי אירועי מעקב"""
    # משפחת MESSAGE_SENT — נרשמים ע"י שירות השליחה, נושאים message_sid
    INVITATION_SENT = "INVITATION_SENT"
    REMINDER_SENT = "REMINDER_SENT"
    SAVE_THE_DATE_SENT = "SAVE_THE_DATE_SENT"
    # אינטראקציות אורח
    LINK_OPENED = "LINK_OPENED"
    RSVP_STARTED = "RSVP_STARTED"
    RSVP_SUBMITTED = "RSVP_SUBMITTED"
    RSVP_UPDATED = "RSVP_UPDATED"
    # סטטוס מסירה מהספק (Twilio status callback)
    MESSAGE_DELIVERED = "MESSAGE_DELIVERED"
    MESSAGE_READ = "MESSAGE_READ"
    MESSAGE_FAILED = "MESSAGE_FAILED"
    # אחר
    GUEST_ADDED = "GUEST_ADDED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"


class Channel(str, enum.Enum):
    """ערוץ שליחה"""
    WHATSAPP = "whatsapp"
    SMS = "sms"
    EMAIL = "email"


SEND_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.INVITATION_SENT,
    EventType.REMINDER_SENT,
    EventType.SAVE_THE_DATE_SENT,
})

DELIVERY_STATUS_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.MESSAGE_DELIVERED,
    EventType.MESSAGE_READ,
    EventType.MESSAGE_FAILED,
})

# תנאי ה-index החלקי — שמות ה-enum כפי שנשמרים בעמודה
_STATUS_TYPES_SQL = "event_type IN ({})".format(
    ", ".join(f"'{t.name}'" for t in sorted(DELIVERY_STATUS_EVENT_TYPES, key=lambda t: t.name))
)


def _new_event_id() -> str:
    return str(uuid.uuid4())


class TrackingEvent(Base):
    """אירוע מעקב בודד — immutable"""

    __tablename__ = "tracking_events"

    id = Column(String(36), primary_key=True, default=_new_event_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False)
    event_type = Column(SQLEnum(EventType), nullable=False)
    channel = Column(SQLEnum(Channel), nullable=True)
    # message_sid מה-metadata — עמודה נפרדת כדי שאפשר יהיה לאנדקס ולאכוף ייחודיות
    correlation_id = Column(String(64), nullable=True, index=True)
    # "metadata" שמור ב-declarative — שם העמודה נשאר metadata
    event_metadata = Column("metadata", JSON, nullable=True)
    admin_triggered = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_tracking_events_tenant_recipient", "tenant_id", "recipient_id", "timestamp"),
        Index("ix_tracking_events_tenant_type", "tenant_id", "event_type"),
        Index(
            "uq_tracking_events_status_per_message",
            "tenant_id",
            "correlation_id",
            "event_type",
            unique=True,
            postgresql_where=text(_STATUS_TYPES_SQL),
            sqlite_where=text(_STATUS_TYPES_SQL),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TrackingEvent {self.event_type} tenant={self.tenant_id} "
            f"recipient={self.recipient_id} sid={self.correlation_id}>"
        )


@event.listens_for(TrackingEvent, "before_update")
def _reject_tracking_event_update(mapper, connection, target):
    """היסטוריה לא נערכת — תיקון = אירוע חדש"""
    raise ValueError(f"TrackingEvent {target.id} is immutable")
