"""
Tracking Event Store — שכבת הגישה ליומן אירועי המעקב.

כל הכתיבות הן INSERT של שורה בודדת. ה-idempotency של אירועי סטטוס
נאכפת ע"י ה-unique index החלקי ב-DB ולא ע"י נעילה באפליקציה:
INSERT ב-savepoint, ו-IntegrityError = האירוע כבר קיים.

כל השאילתות מסוננות לפי tenant_id. שאילתות הקריאה הן bulk — שאילתה
אחת לכל הנמענים ושאילתה אחת לכל האירועים, לעולם לא שאילתה לכל נמען.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.orphan_callback import OrphanCallback
from app.db.models.recipient import Recipient
from app.db.models.tracking_event import (
    Channel,
    DELIVERY_STATUS_EVENT_TYPES,
    EventType,
    SEND_EVENT_TYPES,
    TrackingEvent,
)
from app.domain.services.tracking_metadata import (
    correlation_id_of,
    dump_metadata,
    parse_metadata,
)

logger = get_logger(__name__)


class TrackingEventStore:
    """גישה לטבלת tracking_events (ולטבלאות הקריאה הנלוות)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _build_event(
        self,
        tenant_id: str,
        recipient_id: str,
        event_type: EventType,
        channel: Channel | None,
        metadata: dict[str, Any] | None,
        admin_triggered: bool,
        timestamp: datetime | None,
    ) -> TrackingEvent:
        parsed = parse_metadata(event_type, metadata)
        return TrackingEvent(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=EventType(event_type),
            channel=channel,
            correlation_id=correlation_id_of(parsed),
            event_metadata=dump_metadata(parsed),
            admin_triggered=admin_triggered,
            timestamp=timestamp or utcnow(),
        )

    async def record_event(
        self,
        tenant_id: str,
        recipient_id: str,
        event_type: EventType,
        channel: Channel | None = None,
        metadata: dict[str, Any] | None = None,
        admin_triggered: bool = False,
        timestamp: datetime | None = None,
    ) -> TrackingEvent:
        """
        רישום אירוע חדש ו-commit.

        אירועי סטטוס מסירה צריכים לעבור דרך append_status_event
        (idempotent); כאן IntegrityError על כפילות ממשיך למעלה.
        """
        tracking_event = self._build_event(
            tenant_id, recipient_id, event_type, channel, metadata, admin_triggered, timestamp
        )
        self.db.add(tracking_event)
        await self.db.commit()
        return tracking_event

    async def find_send_event(self, correlation_id: str) -> Optional[TrackingEvent]:
        """
        אירוע השליחה המקורי לפי message_sid.

        ה-callback לא נושא tenant — ה-tenant נגזר מאירוע השליחה עצמו.
        """
        result = await self.db.execute(
            select(TrackingEvent)
            .where(
                TrackingEvent.correlation_id == correlation_id,
                TrackingEvent.event_type.in_(list(SEND_EVENT_TYPES)),
            )
            .order_by(TrackingEvent.timestamp.asc(), TrackingEvent.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_status_event(
        self, tenant_id: str, correlation_id: str, event_type: EventType
    ) -> bool:
        result = await self.db.execute(
            select(TrackingEvent.id)
            .where(
                TrackingEvent.tenant_id == tenant_id,
                TrackingEvent.correlation_id == correlation_id,
                TrackingEvent.event_type == event_type,
            )
            .limit(1)
        )
        return result.first() is not None

    async def append_status_event(
        self,
        tenant_id: str,
        recipient_id: str,
        event_type: EventType,
        channel: Channel | None,
        metadata: dict[str, Any],
    ) -> Optional[TrackingEvent]:
        """
        הוספת אירוע סטטוס מסירה — idempotent.

        מחזיר None אם אירוע מאותו סוג כבר קיים ל-message_sid (גם אם נוסף
        ע"י callback מקביל בין הבדיקה להוספה).
        """
        if event_type not in DELIVERY_STATUS_EVENT_TYPES:
            raise ValueError(f"{event_type} is not a delivery status event")

        tracking_event = self._build_event(
            tenant_id, recipient_id, event_type, channel, metadata, False, None
        )
        try:
            async with self.db.begin_nested():
                self.db.add(tracking_event)
        except IntegrityError:
            logger.info(
                "Status event already recorded (unique constraint)",
                extra_data={
                    "tenant_id": tenant_id,
                    "message_sid": tracking_event.correlation_id,
                    "event_type": event_type.value,
                },
            )
            return None

        await self.db.commit()
        return tracking_event

    async def list_events(
        self,
        tenant_id: str,
        event_types: Iterable[EventType] | None = None,
        recipient_id: str | None = None,
    ) -> List[TrackingEvent]:
        """כל האירועים של ה-tenant (אופציונלית: סוגים / נמען), לפי סדר כרונולוגי"""
        stmt = select(TrackingEvent).where(TrackingEvent.tenant_id == tenant_id)
        if event_types is not None:
            stmt = stmt.where(TrackingEvent.event_type.in_(list(event_types)))
        if recipient_id is not None:
            stmt = stmt.where(TrackingEvent.recipient_id == recipient_id)
        stmt = stmt.order_by(TrackingEvent.timestamp.asc(), TrackingEvent.id.asc())

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_events_by_correlation(
        self, correlation_id: str, tenant_id: str | None = None
    ) -> List[TrackingEvent]:
        """אירוע השליחה + אירועי הסטטוס של message_sid אחד (לדיבוג)"""
        stmt = select(TrackingEvent).where(TrackingEvent.correlation_id == correlation_id)
        if tenant_id is not None:
            stmt = stmt.where(TrackingEvent.tenant_id == tenant_id)
        stmt = stmt.order_by(TrackingEvent.timestamp.asc(), TrackingEvent.id.asc())

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_by_channel_and_type(
        self, tenant_id: str, event_types: Iterable[EventType]
    ) -> dict[tuple[Channel, EventType], int]:
        """ספירה מקובצת (channel, event_type) — שאילתת GROUP BY אחת"""
        result = await self.db.execute(
            select(TrackingEvent.channel, TrackingEvent.event_type, func.count(TrackingEvent.id))
            .where(
                TrackingEvent.tenant_id == tenant_id,
                TrackingEvent.channel.is_not(None),
                TrackingEvent.event_type.in_(list(event_types)),
            )
            .group_by(TrackingEvent.channel, TrackingEvent.event_type)
        )
        return {(row[0], row[1]): row[2] for row in result.all()}

    async def list_recipients(self, tenant_id: str) -> List[Recipient]:
        result = await self.db.execute(
            select(Recipient)
            .where(Recipient.tenant_id == tenant_id)
            .order_by(Recipient.name.asc(), Recipient.id.asc())
        )
        return list(result.scalars().all())

    async def get_recipient(self, tenant_id: str, recipient_id: str) -> Optional[Recipient]:
        result = await self.db.execute(
            select(Recipient).where(
                Recipient.tenant_id == tenant_id,
                Recipient.id == recipient_id,
            )
        )
        return result.scalar_one_or_none()

    # ─── dead-letter ────────────────────────────────────────────

    async def record_orphan_callback(
        self,
        message_sid: str,
        message_status: str | None,
        error_code: str | None,
        payload: dict[str, Any] | None,
    ) -> OrphanCallback:
        orphan = OrphanCallback(
            message_sid=message_sid,
            message_status=message_status,
            error_code=error_code,
            payload=payload,
            received_at=utcnow(),
        )
        self.db.add(orphan)
        await self.db.commit()
        return orphan

    async def list_orphan_callbacks(self, limit: int = 50) -> List[OrphanCallback]:
        result = await self.db.execute(
            select(OrphanCallback)
            .order_by(OrphanCallback.received_at.desc(), OrphanCallback.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def purge_orphan_callbacks(self, older_than: datetime) -> int:
        """מחיקת רשומות dead-letter ישנות. מחזיר כמה נמחקו."""
        result = await self.db.execute(
            delete(OrphanCallback).where(OrphanCallback.received_at < older_than)
        )
        await self.db.commit()
        return result.rowcount or 0
