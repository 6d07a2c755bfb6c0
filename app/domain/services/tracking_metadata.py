"""
Metadata של אירועי מעקב — tagged union לפי event_type.

כל סוג אירוע נושא רק את השדות שרלוונטיים לו (למשל רק MESSAGE_FAILED
נושא error_code). ב-DB נשמר JSON בלי ה-discriminator — עמודת event_type
של השורה מספקת אותו בקריאה.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.core.exceptions import InvalidEventMetadataError
from app.db.models.tracking_event import EventType


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SentMetadata(_MetadataBase):
    """הודעה יצאה לספק — message_sid הוא מפתח ה-correlation ל-callbacks"""
    event_type: Literal["INVITATION_SENT", "REMINDER_SENT", "SAVE_THE_DATE_SENT"]
    message_sid: str = Field(min_length=1, max_length=64)
    template_type: Optional[str] = None
    to: Optional[str] = None


class DeliveryStatusMetadata(_MetadataBase):
    event_type: Literal["MESSAGE_DELIVERED", "MESSAGE_READ"]
    message_sid: str = Field(min_length=1, max_length=64)
    original_event_id: Optional[str] = None
    original_event_type: Optional[str] = None


class FailureMetadata(_MetadataBase):
    event_type: Literal["MESSAGE_FAILED"]
    message_sid: str = Field(min_length=1, max_length=64)
    original_event_id: Optional[str] = None
    original_event_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class LinkOpenedMetadata(_MetadataBase):
    event_type: Literal["LINK_OPENED"]
    user_agent: Optional[str] = None


class RsvpMetadata(_MetadataBase):
    event_type: Literal["RSVP_STARTED", "RSVP_SUBMITTED", "RSVP_UPDATED"]
    attending_count: Optional[int] = Field(default=None, ge=0)
    language: Optional[str] = None


class GuestAddedMetadata(_MetadataBase):
    event_type: Literal["GUEST_ADDED"]
    member_name: str = Field(min_length=1)


class PaymentMetadata(_MetadataBase):
    event_type: Literal["PAYMENT_RECEIVED"]
    amount: float = Field(ge=0)
    reference: Optional[str] = None


TrackingMetadata = Annotated[
    Union[
        SentMetadata,
        DeliveryStatusMetadata,
        FailureMetadata,
        LinkOpenedMetadata,
        RsvpMetadata,
        GuestAddedMetadata,
        PaymentMetadata,
    ],
    Field(discriminator="event_type"),
]

_metadata_adapter: TypeAdapter[TrackingMetadata] = TypeAdapter(TrackingMetadata)


def parse_metadata(event_type: EventType | str, raw: dict[str, Any] | None) -> TrackingMetadata:
    """ולידציה של metadata מול סוג האירוע. זורק InvalidEventMetadataError."""
    event_type = EventType(event_type)
    data = dict(raw or {})
    # discriminator תמיד מגיע מסוג האירוע, לא מהקלט
    data["event_type"] = event_type.value
    try:
        return _metadata_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidEventMetadataError(
            event_type.value,
            errors=[
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
        ) from e


def dump_metadata(metadata: TrackingMetadata) -> dict[str, Any] | None:
    """JSON לשמירה ב-DB — בלי discriminator ובלי שדות ריקים"""
    data = metadata.model_dump(exclude={"event_type"}, exclude_none=True)
    return data or None


def correlation_id_of(metadata: TrackingMetadata) -> str | None:
    return getattr(metadata, "message_sid", None)
