"""
בדיקות ל-TrackingService — app/domain/services/tracking_service.py

כישלון ברישום לא זורק (מחזיר None), חוץ משימוש שגוי ב-track_message_sent.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.tracking_event import Channel, EventType
from app.domain.services.tracking_service import TrackingService


class TestTrackMessageSent:

    @pytest.mark.asyncio
    async def test_records_send_with_sid(self, db_session: AsyncSession) -> None:
        tracking_event = await TrackingService(db_session).track_message_sent(
            tenant_id="wedding-1",
            recipient_id="family-1",
            channel=Channel.WHATSAPP,
            message_sid="SM100",
            template_type="invitation_he",
            admin_triggered=True,
        )

        assert tracking_event.event_type == EventType.INVITATION_SENT
        assert tracking_event.correlation_id == "SM100"
        assert tracking_event.event_metadata == {"message_sid": "SM100", "template_type": "invitation_he"}
        assert tracking_event.admin_triggered is True

    @pytest.mark.asyncio
    async def test_save_the_date_is_a_send_event(self, db_session: AsyncSession) -> None:
        tracking_event = await TrackingService(db_session).track_message_sent(
            "wedding-1", "family-1", Channel.EMAIL, "SM101", event_type=EventType.SAVE_THE_DATE_SENT
        )

        assert tracking_event.event_type == EventType.SAVE_THE_DATE_SENT

    @pytest.mark.asyncio
    async def test_non_send_type_rejected(self, db_session: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await TrackingService(db_session).track_message_sent(
                "wedding-1", "family-1", Channel.SMS, "SM1", event_type=EventType.LINK_OPENED
            )

    @pytest.mark.asyncio
    async def test_empty_sid_rejected(self, db_session: AsyncSession) -> None:
        with pytest.raises(ValueError, match="message_sid"):
            await TrackingService(db_session).track_message_sent(
                "wedding-1", "family-1", Channel.SMS, ""
            )


class TestGuestFlowTracking:

    @pytest.mark.asyncio
    async def test_link_opened(self, db_session: AsyncSession) -> None:
        tracking_event = await TrackingService(db_session).track_link_opened(
            "wedding-1", "family-1", channel=Channel.SMS, user_agent="Mozilla/5.0"
        )

        assert tracking_event.event_type == EventType.LINK_OPENED
        assert tracking_event.correlation_id is None
        assert tracking_event.event_metadata == {"user_agent": "Mozilla/5.0"}

    @pytest.mark.asyncio
    async def test_rsvp_submitted(self, db_session: AsyncSession) -> None:
        tracking_event = await TrackingService(db_session).track_rsvp_submitted(
            "wedding-1", "family-1", attending_count=4, language="he"
        )

        assert tracking_event.event_metadata == {"attending_count": 4, "language": "he"}

    @pytest.mark.asyncio
    async def test_guest_added(self, db_session: AsyncSession) -> None:
        tracking_event = await TrackingService(db_session).track_guest_added(
            "wedding-1", "family-1", member_name="נועה"
        )

        assert tracking_event.event_type == EventType.GUEST_ADDED


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_invalid_metadata_returns_none(self, db_session: AsyncSession) -> None:
        result = await TrackingService(db_session).track_rsvp_submitted(
            "wedding-1", "family-1", attending_count=-2
        )

        assert result is None

    @pytest.mark.asyncio
    async def test_db_error_returns_none(self, db_session: AsyncSession) -> None:
        service = TrackingService(db_session)

        with patch.object(
            service.store,
            "record_event",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down"))),
        ):
            result = await service.track_link_opened("wedding-1", "family-1")

        assert result is None
