"""
בדיקות ל-POST /api/tracking/events — רישום אירועים משירותים אחרים
"""
import pytest
from sqlalchemy import select

from app.db.models.tracking_event import TrackingEvent
from tests.conftest import ADMIN_HEADERS


class TestCreateTrackingEvent:

    @pytest.mark.integration
    async def test_send_event_created(self, test_client, db_session) -> None:
        response = await test_client.post(
            "/api/tracking/events",
            headers=ADMIN_HEADERS,
            json={
                "tenant_id": "wedding-1",
                "recipient_id": "family-1",
                "event_type": "INVITATION_SENT",
                "channel": "whatsapp",
                "metadata": {"message_sid": "SM100", "template_type": "invitation"},
                "admin_triggered": True,
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["correlation_id"] == "SM100"
        assert data["channel"] == "whatsapp"
        assert data["admin_triggered"] is True

        stored = (await db_session.execute(select(TrackingEvent))).scalars().all()
        assert len(stored) == 1
        assert stored[0].id == data["id"]

    @pytest.mark.integration
    async def test_guest_event_without_metadata(self, test_client) -> None:
        response = await test_client.post(
            "/api/tracking/events",
            headers=ADMIN_HEADERS,
            json={"tenant_id": "wedding-1", "recipient_id": "family-1", "event_type": "RSVP_STARTED"},
        )

        assert response.status_code == 201
        assert response.json()["correlation_id"] is None

    @pytest.mark.integration
    async def test_metadata_mismatch_is_422(self, test_client, db_session) -> None:
        response = await test_client.post(
            "/api/tracking/events",
            headers=ADMIN_HEADERS,
            json={
                "tenant_id": "wedding-1",
                "recipient_id": "family-1",
                "event_type": "LINK_OPENED",
                "metadata": {"error_code": "30008"},
            },
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "ERR_3002"
        assert (await db_session.execute(select(TrackingEvent))).scalars().all() == []

    @pytest.mark.integration
    @pytest.mark.parametrize("event_type", ["MESSAGE_DELIVERED", "MESSAGE_READ", "MESSAGE_FAILED"])
    async def test_delivery_status_rejected(self, test_client, event_type) -> None:
        """סטטוס מסירה נרשם רק מ-callback חתום"""
        response = await test_client.post(
            "/api/tracking/events",
            headers=ADMIN_HEADERS,
            json={
                "tenant_id": "wedding-1",
                "recipient_id": "family-1",
                "event_type": event_type,
                "metadata": {"message_sid": "SM100"},
            },
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "event_type"

    @pytest.mark.integration
    async def test_unknown_event_type_is_422(self, test_client) -> None:
        response = await test_client.post(
            "/api/tracking/events",
            headers=ADMIN_HEADERS,
            json={"tenant_id": "wedding-1", "recipient_id": "family-1", "event_type": "CAKE_EATEN"},
        )

        assert response.status_code == 422

    @pytest.mark.integration
    async def test_requires_admin_key(self, test_client) -> None:
        response = await test_client.post(
            "/api/tracking/events",
            json={"tenant_id": "wedding-1", "recipient_id": "family-1", "event_type": "LINK_OPENED"},
        )

        assert response.status_code == 401
