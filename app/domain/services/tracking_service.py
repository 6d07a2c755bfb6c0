"""
Tracking Service — helpers לרישום אירועי מעקב מתוך זרימות האורח והשליחה.

כישלון ברישום נרשם ללוג ומחזיר None — מעקב אנליטי לא אמור לשבור
שליחת RSVP או פתיחת קישור.
"""
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidEventMetadataError
from app.core.logging import get_logger
from app.db.models.tracking_event import Channel, EventType, SEND_EVENT_TYPES, TrackingEvent
from app.domain.services.event_store import TrackingEventStore

logger = get_logger(__name__)


class TrackingService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = TrackingEventStore(db)

    async def track_event(
        self,
        tenant_id: str,
        recipient_id: str,
        event_type: EventType,
        channel: Channel | None = None,
        metadata: dict[str, Any] | None = None,
        admin_triggered: bool = False,
    ) -> Optional[TrackingEvent]:
        try:
            return await self.store.record_event(
                tenant_id=tenant_id,
                recipient_id=recipient_id,
                event_type=event_type,
                channel=channel,
                metadata=metadata,
                admin_triggered=admin_triggered,
            )
        except InvalidEventMetadataError as e:
            logger.error(
                "Failed to track event: invalid metadata",
                extra_data={
                    "tenant_id": tenant_id,
                    "recipient_id": recipient_id,
                    "event_type": EventType(event_type).value,
                    "errors": e.details.get("errors"),
                },
            )
            return None
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(
                "Failed to track event",
                extra_data={
                    "tenant_id": tenant_id,
                    "recipient_id": recipient_id,
                    "event_type": EventType(event_type).value,
                },
                exc_info=True,
            )
            return None

    async def track_message_sent(
        self,
        tenant_id: str,
        recipient_id: str,
        channel: Channel,
        message_sid: str,
        event_type: EventType = EventType.INVITATION_SENT,
        template_type: str | None = None,
        admin_triggered: bool = False,
    ) -> Optional[TrackingEvent]:
        """
        רישום הודעה יוצאת. message_sid חובה — בלעדיו callbacks של סטטוס
        מסירה לא יוכלו להתאים את עצמם לשליחה ויגיעו כיתומים.
        """
        if event_type not in SEND_EVENT_TYPES:
            raise ValueError(f"{event_type} is not a send event type")
        if not message_sid:
            raise ValueError("message_sid is required to track an outbound message")

        return await self.track_event(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=event_type,
            channel=channel,
            metadata={"message_sid": message_sid, "template_type": template_type},
            admin_triggered=admin_triggered,
        )

    async def track_link_opened(
        self,
        tenant_id: str,
        recipient_id: str,
        channel: Channel | None = None,
        user_agent: str | None = None,
    ) -> Optional[TrackingEvent]:
        return await self.track_event(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=EventType.LINK_OPENED,
            channel=channel,
            metadata={"user_agent": user_agent},
        )

    async def track_rsvp_submitted(
        self,
        tenant_id: str,
        recipient_id: str,
        channel: Channel | None = None,
        attending_count: int | None = None,
        language: str | None = None,
    ) -> Optional[TrackingEvent]:
        return await self.track_event(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=EventType.RSVP_SUBMITTED,
            channel=channel,
            metadata={"attending_count": attending_count, "language": language},
        )

    async def track_guest_added(
        self, tenant_id: str, recipient_id: str, member_name: str
    ) -> Optional[TrackingEvent]:
        return await self.track_event(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=EventType.GUEST_ADDED,
            metadata={"member_name": member_name},
        )
