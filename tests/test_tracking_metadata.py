"""
בדיקות ל-metadata של אירועי מעקב — app/domain/services/tracking_metadata.py

כל סוג אירוע מקבל רק את השדות שלו; שדה זר נדחה עם InvalidEventMetadataError.
"""
import pytest

from app.core.exceptions import ErrorCode, InvalidEventMetadataError
from app.db.models.tracking_event import EventType
from app.domain.services.tracking_metadata import (
    FailureMetadata,
    SentMetadata,
    correlation_id_of,
    dump_metadata,
    parse_metadata,
)


class TestParseMetadata:

    @pytest.mark.unit
    def test_send_event_requires_message_sid(self) -> None:
        with pytest.raises(InvalidEventMetadataError) as exc_info:
            parse_metadata(EventType.INVITATION_SENT, {"template_type": "invitation"})

        assert exc_info.value.status_code == 422
        assert exc_info.value.error_code == ErrorCode.INVALID_EVENT_METADATA
        assert any("message_sid" in err["loc"] for err in exc_info.value.details["errors"])

    @pytest.mark.unit
    def test_send_event_parsed(self) -> None:
        parsed = parse_metadata(
            EventType.REMINDER_SENT, {"message_sid": "SM1", "template_type": "reminder"}
        )
        assert isinstance(parsed, SentMetadata)
        assert correlation_id_of(parsed) == "SM1"

    @pytest.mark.unit
    def test_error_code_only_on_failure(self) -> None:
        parsed = parse_metadata(
            EventType.MESSAGE_FAILED, {"message_sid": "SM1", "error_code": "30008"}
        )
        assert isinstance(parsed, FailureMetadata)
        assert parsed.error_code == "30008"

        with pytest.raises(InvalidEventMetadataError):
            parse_metadata(
                EventType.MESSAGE_DELIVERED, {"message_sid": "SM1", "error_code": "30008"}
            )

    @pytest.mark.unit
    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(InvalidEventMetadataError):
            parse_metadata(EventType.LINK_OPENED, {"user_agent": "Safari", "phone": "+972501234567"})

    @pytest.mark.unit
    def test_discriminator_comes_from_event_type(self) -> None:
        """event_type בקלט לא יכול "להחליף" את סוג האירוע"""
        parsed = parse_metadata(EventType.LINK_OPENED, {"event_type": "PAYMENT_RECEIVED"})
        assert parsed.event_type == "LINK_OPENED"

    @pytest.mark.unit
    def test_accepts_string_event_type(self) -> None:
        parsed = parse_metadata("GUEST_ADDED", {"member_name": "דנה"})
        assert parsed.member_name == "דנה"

    @pytest.mark.unit
    def test_negative_attending_count_rejected(self) -> None:
        with pytest.raises(InvalidEventMetadataError):
            parse_metadata(EventType.RSVP_SUBMITTED, {"attending_count": -1})

    @pytest.mark.unit
    def test_events_without_metadata(self) -> None:
        assert correlation_id_of(parse_metadata(EventType.RSVP_STARTED, None)) is None


class TestDumpMetadata:

    @pytest.mark.unit
    def test_dump_drops_discriminator_and_nulls(self) -> None:
        parsed = parse_metadata(
            EventType.INVITATION_SENT, {"message_sid": "SM1", "template_type": None}
        )
        assert dump_metadata(parsed) == {"message_sid": "SM1"}

    @pytest.mark.unit
    def test_empty_dump_is_none(self) -> None:
        assert dump_metadata(parse_metadata(EventType.LINK_OPENED, {})) is None
