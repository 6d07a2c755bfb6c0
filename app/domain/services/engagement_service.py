"""
Engagement Service — ניתוח מעורבות אורחים מיומן אירועי המעקב.

משפך קבוע של חמישה שלבים: הזמנה נשלחה → נמסרה → נקראה → קישור נפתח →
RSVP אושר. לכל שלב נלקח המופע הראשון של סוג האירוע, כך שסדר ההגעה של
ה-callbacks (read לפני delivered וכו') לא משנה את התוצאה.

כל פעולה מבצעת לכל היותר שתי קריאות bulk: כל הנמענים + כל האירועים.
הדשבורד מרונדר הרבה, ולחתונה יכולים להיות מאות נמענים.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, List, Literal, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.recipient import Recipient
from app.db.models.tracking_event import Channel, EventType, SEND_EVENT_TYPES, TrackingEvent
from app.domain.services.event_store import TrackingEventStore

logger = get_logger(__name__)

# (שם השלב, סוג האירוע שמסמן אותו) — הסדר הוא סדר המשפך
FUNNEL_MILESTONES: tuple[tuple[str, EventType], ...] = (
    ("invited", EventType.INVITATION_SENT),
    ("delivered", EventType.MESSAGE_DELIVERED),
    ("read", EventType.MESSAGE_READ),
    ("link_opened", EventType.LINK_OPENED),
    ("rsvp_confirmed", EventType.RSVP_SUBMITTED),
)

_FUNNEL_EVENT_TYPES = [event_type for _, event_type in FUNNEL_MILESTONES]

_CHANNEL_RATE_EVENT_TYPES = [
    *SEND_EVENT_TYPES,
    EventType.MESSAGE_DELIVERED,
    EventType.MESSAGE_READ,
    EventType.MESSAGE_FAILED,
]

_STALE_EVENT_TYPES = [
    EventType.INVITATION_SENT,
    EventType.MESSAGE_DELIVERED,
    EventType.MESSAGE_READ,
]


class EngagementStep(BaseModel):
    status: Literal["pending", "completed"] = "pending"
    timestamp: Optional[datetime] = None
    channel: Optional[Channel] = None


class RecipientEngagement(BaseModel):
    recipient_id: str
    recipient_name: str
    invited: EngagementStep
    delivered: EngagementStep
    read: EngagementStep
    link_opened: EngagementStep
    rsvp_confirmed: EngagementStep
    completion_percentage: int


class TenantEngagementStats(BaseModel):
    tenant_id: str
    total_recipients: int
    invited_count: int
    delivered_count: int
    read_count: int
    link_opened_count: int
    rsvp_confirmed_count: int
    average_completion_percentage: int
    engagements: List[RecipientEngagement]


class ChannelReadRate(BaseModel):
    channel: Channel
    sent_count: int
    delivered_count: int
    read_count: int
    failed_count: int
    delivery_rate: int
    read_rate: int


class StaleInvitation(BaseModel):
    recipient_id: str
    recipient_name: str
    channel_preference: Optional[Channel] = None
    invitation_sent_at: datetime
    delivered_at: Optional[datetime] = None
    days_since_sent: int


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(numerator: int, denominator: int) -> int:
    """אחוז שלם בטווח [0, 100]; מכנה 0 — 0"""
    if denominator <= 0:
        return 0
    value = _round_half_up(Decimal(numerator) * 100 / Decimal(denominator))
    return max(0, min(100, value))


def _first_occurrences(events: Iterable[TrackingEvent]) -> dict[EventType, TrackingEvent]:
    """המופע הראשון (המוקדם ביותר) של כל סוג אירוע; תיקו בזמן — לפי id"""
    first: dict[EventType, TrackingEvent] = {}
    for tracking_event in events:
        current = first.get(tracking_event.event_type)
        if current is None or (
            (tracking_event.timestamp, tracking_event.id) < (current.timestamp, current.id)
        ):
            first[tracking_event.event_type] = tracking_event
    return first


def build_recipient_engagement(
    recipient: Recipient, events: Iterable[TrackingEvent]
) -> RecipientEngagement:
    first = _first_occurrences(events)
    steps: dict[str, EngagementStep] = {}
    for name, event_type in FUNNEL_MILESTONES:
        hit = first.get(event_type)
        steps[name] = (
            EngagementStep(status="completed", timestamp=hit.timestamp, channel=hit.channel)
            if hit is not None
            else EngagementStep()
        )

    reached = sum(1 for step in steps.values() if step.status == "completed")
    return RecipientEngagement(
        recipient_id=recipient.id,
        recipient_name=recipient.name,
        completion_percentage=percentage(reached, len(FUNNEL_MILESTONES)),
        **steps,
    )


def _group_by_recipient(events: Iterable[TrackingEvent]) -> dict[str, list[TrackingEvent]]:
    grouped: dict[str, list[TrackingEvent]] = defaultdict(list)
    for tracking_event in events:
        grouped[tracking_event.recipient_id].append(tracking_event)
    return grouped


class EngagementService:
    """שאילתות קריאה בלבד, כולן לפי tenant"""

    def __init__(self, db: AsyncSession, now: Callable[[], datetime] | None = None):
        self.store = TrackingEventStore(db)
        self._now = now or utcnow

    @log_async_operation("recipient_timeline")
    async def recipient_timeline(
        self, tenant_id: str, recipient_id: str
    ) -> Optional[RecipientEngagement]:
        """ציר המעורבות של נמען אחד. None אם הנמען לא קיים ב-tenant."""
        recipient = await self.store.get_recipient(tenant_id, recipient_id)
        if recipient is None:
            return None

        events = await self.store.list_events(
            tenant_id, event_types=_FUNNEL_EVENT_TYPES, recipient_id=recipient_id
        )
        return build_recipient_engagement(recipient, events)

    @log_async_operation("tenant_stats")
    async def tenant_stats(self, tenant_id: str) -> TenantEngagementStats:
        recipients = await self.store.list_recipients(tenant_id)
        events_by_recipient = _group_by_recipient(
            await self.store.list_events(tenant_id, event_types=_FUNNEL_EVENT_TYPES)
        )

        engagements = [
            build_recipient_engagement(recipient, events_by_recipient.get(recipient.id, ()))
            for recipient in recipients
        ]

        def _count(milestone: str) -> int:
            return sum(1 for e in engagements if getattr(e, milestone).status == "completed")

        if engagements:
            average = _round_half_up(
                Decimal(sum(e.completion_percentage for e in engagements)) / len(engagements)
            )
        else:
            average = 0

        return TenantEngagementStats(
            tenant_id=tenant_id,
            total_recipients=len(engagements),
            invited_count=_count("invited"),
            delivered_count=_count("delivered"),
            read_count=_count("read"),
            link_opened_count=_count("link_opened"),
            rsvp_confirmed_count=_count("rsvp_confirmed"),
            average_completion_percentage=average,
            engagements=engagements,
        )

    @log_async_operation("channel_read_rates")
    async def channel_read_rates(self, tenant_id: str) -> List[ChannelReadRate]:
        """
        שיעורי מסירה וקריאה לכל ערוץ.

        sent סופר את כל משפחת השליחה (הזמנות, תזכורות, save-the-date) —
        כל אירוע סטטוס נגזר מאחת מהן.
        """
        counts = await self.store.count_by_channel_and_type(tenant_id, _CHANNEL_RATE_EVENT_TYPES)

        rates: List[ChannelReadRate] = []
        for channel in Channel:
            sent = sum(counts.get((channel, t), 0) for t in SEND_EVENT_TYPES)
            delivered = counts.get((channel, EventType.MESSAGE_DELIVERED), 0)
            read = counts.get((channel, EventType.MESSAGE_READ), 0)
            failed = counts.get((channel, EventType.MESSAGE_FAILED), 0)
            rates.append(ChannelReadRate(
                channel=channel,
                sent_count=sent,
                delivered_count=delivered,
                read_count=read,
                failed_count=failed,
                delivery_rate=percentage(sent - failed, sent),
                read_rate=percentage(read, delivered),
            ))
        return rates

    @log_async_operation("stale_invitations")
    async def stale_invitations(self, tenant_id: str) -> List[StaleInvitation]:
        """נמענים שקיבלו הזמנה ועוד לא קראו אותה — קלט ל-workflow של תזכורות"""
        recipients = await self.store.list_recipients(tenant_id)
        events_by_recipient = _group_by_recipient(
            await self.store.list_events(tenant_id, event_types=_STALE_EVENT_TYPES)
        )

        now = self._now()
        stale: List[StaleInvitation] = []
        for recipient in recipients:
            first = _first_occurrences(events_by_recipient.get(recipient.id, ()))
            invitation = first.get(EventType.INVITATION_SENT)
            if invitation is None or EventType.MESSAGE_READ in first:
                continue

            delivered = first.get(EventType.MESSAGE_DELIVERED)
            stale.append(StaleInvitation(
                recipient_id=recipient.id,
                recipient_name=recipient.name,
                channel_preference=recipient.channel_preference,
                invitation_sent_at=invitation.timestamp,
                delivered_at=delivered.timestamp if delivered else None,
                days_since_sent=max(0, (now - invitation.timestamp).days),
            ))
        return stale
