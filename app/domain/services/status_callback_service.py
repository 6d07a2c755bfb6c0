"""
Status Callback Service — קליטת callbacks של סטטוס מסירה מ-Twilio.

סדר העיבוד:
1. אימות חתימה — כישלון: 403
2. MessageSid חובה — חסר, או שדה שמופיע פעמיים בגוף: 400
3. מיפוי סטטוס לסוג אירוע — לא רלוונטי: 200 בלי פעולה
4. איתור אירוע השליחה המקורי לפי message_sid (ממנו נגזרים tenant/נמען/ערוץ)
   — לא נמצא: dead-letter + 200
5. בדיקת idempotency — קיים: 200
6. הוספת אירוע הסטטוס (unique index סוגר race בין callbacks מקבילים)
7. 200

כל כשל אחר (DB, timeout) נבלע ומחזיר 200: Twilio מנסה שוב על כל תשובה
שאינה 2xx, ו-retry storm יקר יותר מאירוע אנליטיקה שאבד.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import parse_qsl

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    DuplicateEventError,
    MalformedCallbackError,
    OrphanCallbackError,
    StatusCallbackException,
    StorageFailureError,
    UnmappedStatusError,
    WebhookAuthenticationError,
)
from app.core.logging import get_logger
from app.db.models.tracking_event import EventType, TrackingEvent
from app.domain.services.event_store import TrackingEventStore
from app.domain.services.twilio.signature import verify_raw_request, verify_signature
from app.domain.services.twilio.status_mapper import map_provider_status

logger = get_logger(__name__)

# שדות שלא נשמרים ב-dead-letter (מספרי טלפון ותוכן הודעה)
_PII_FIELDS = frozenset({"To", "From", "Body"})


class IngestionOutcome(str, enum.Enum):
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    UNMAPPED_STATUS = "unmapped_status"
    STORAGE_FAILURE = "storage_failure"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"


_OUTCOME_BY_ERROR: dict[type[StatusCallbackException], IngestionOutcome] = {
    WebhookAuthenticationError: IngestionOutcome.INVALID_SIGNATURE,
    MalformedCallbackError: IngestionOutcome.MALFORMED,
    UnmappedStatusError: IngestionOutcome.UNMAPPED_STATUS,
    OrphanCallbackError: IngestionOutcome.ORPHAN,
    DuplicateEventError: IngestionOutcome.DUPLICATE,
    StorageFailureError: IngestionOutcome.STORAGE_FAILURE,
}


@dataclass(frozen=True)
class StatusCallbackRequest:
    """callback נכנס: URL כפי ש-Twilio חתם עליו, שדות ה-form, וכותרת החתימה"""
    url: str
    params: Mapping[str, str]
    signature: Optional[str]
    raw_body: Optional[bytes] = None
    # שדות שהופיעו יותר מפעם אחת בגוף; params מחזיק את הערך הראשון
    repeated_fields: frozenset[str] = frozenset()

    @classmethod
    def from_raw(cls, url: str, raw_body: bytes, signature: Optional[str]) -> "StatusCallbackRequest":
        try:
            pairs = parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError:
            pairs = []

        params: dict[str, str] = {}
        repeated: set[str] = set()
        for key, value in pairs:
            if key in params:
                repeated.add(key)
                continue
            params[key] = value
        return cls(
            url=url,
            params=params,
            signature=signature,
            raw_body=raw_body,
            repeated_fields=frozenset(repeated),
        )

    def _field(self, name: str) -> Optional[str]:
        value = (self.params.get(name) or "").strip()
        return value or None

    @property
    def message_sid(self) -> Optional[str]:
        return self._field("MessageSid")

    @property
    def message_status(self) -> Optional[str]:
        return self._field("MessageStatus")

    @property
    def error_code(self) -> Optional[str]:
        return self._field("ErrorCode")

    @property
    def error_message(self) -> Optional[str]:
        return self._field("ErrorMessage")


@dataclass(frozen=True)
class IngestionResult:
    outcome: IngestionOutcome
    http_status: int = 200
    event_id: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.http_status < 400


class StatusCallbackService:
    """
    עיבוד callback בודד. בטוח להרצה מקבילית עם אותו message_sid —
    הנכונות נשענת על ה-unique index ב-DB, לא על נעילה בתהליך.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        auth_token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.store = TrackingEventStore(db)
        self._auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self._timeout_seconds = timeout_seconds or settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS

    async def handle(self, request: StatusCallbackRequest) -> IngestionResult:
        log_context = {
            "message_sid": request.message_sid,
            "message_status": request.message_status,
        }
        try:
            tracking_event = await self._ingest(request)
        except StatusCallbackException as exc:
            outcome = _OUTCOME_BY_ERROR[type(exc)]
            self._log_outcome(outcome, exc, log_context)
            if outcome is IngestionOutcome.ORPHAN:
                await self._dead_letter(request)
            return IngestionResult(
                outcome=outcome,
                http_status=exc.status_code,
                details=exc.details,
            )
        except Exception:
            # אין מסלול התאוששות סינכרוני — מאשרים כדי לא לעורר retry storm
            logger.error(
                "Unexpected error while processing Twilio status callback",
                extra_data=log_context,
                exc_info=True,
            )
            return IngestionResult(outcome=IngestionOutcome.STORAGE_FAILURE)

        logger.info(
            "Recorded delivery status event",
            extra_data={
                **log_context,
                "event_id": tracking_event.id,
                "event_type": tracking_event.event_type.value,
                "tenant_id": tracking_event.tenant_id,
                "recipient_id": tracking_event.recipient_id,
            },
        )
        return IngestionResult(outcome=IngestionOutcome.RECORDED, event_id=tracking_event.id)

    async def _ingest(self, request: StatusCallbackRequest) -> TrackingEvent:
        self._verify(request)

        if request.repeated_fields:
            # Twilio לא שולח שדה פעמיים — אין ערך אחד שאפשר לסמוך עליו
            raise MalformedCallbackError(min(request.repeated_fields), reason="repeated")

        message_sid = request.message_sid
        if not message_sid:
            raise MalformedCallbackError("MessageSid")

        event_type = map_provider_status(request.message_status)
        if event_type is None:
            raise UnmappedStatusError(request.message_status or "", message_sid=message_sid)

        try:
            return await asyncio.wait_for(
                self._correlate_and_append(request, message_sid, event_type),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._safe_rollback()
            raise StorageFailureError("timeout", message_sid=message_sid, error=str(e)) from e
        except SQLAlchemyError as e:
            await self._safe_rollback()
            raise StorageFailureError("insert", message_sid=message_sid, error=str(e)) from e

    def _verify(self, request: StatusCallbackRequest) -> None:
        if not self._auth_token:
            raise WebhookAuthenticationError("auth token not configured")
        if not request.signature:
            raise WebhookAuthenticationError("missing signature header")

        if request.raw_body is not None:
            valid = verify_raw_request(request.url, request.raw_body, request.signature, self._auth_token)
        else:
            valid = verify_signature(request.url, request.params, request.signature, self._auth_token)
        if not valid:
            raise WebhookAuthenticationError("signature mismatch")

    async def _correlate_and_append(
        self,
        request: StatusCallbackRequest,
        message_sid: str,
        event_type: EventType,
    ) -> TrackingEvent:
        send_event = await self.store.find_send_event(message_sid)
        if send_event is None:
            raise OrphanCallbackError(message_sid)

        if await self.store.has_status_event(send_event.tenant_id, message_sid, event_type):
            raise DuplicateEventError(message_sid, event_type.value)

        send_metadata = send_event.event_metadata or {}
        metadata = {
            "message_sid": message_sid,
            "original_event_id": send_event.id,
            "original_event_type": send_metadata.get("template_type") or send_event.event_type.value,
        }
        if event_type is EventType.MESSAGE_FAILED:
            metadata["error_code"] = request.error_code
            metadata["error_message"] = request.error_message

        tracking_event = await self.store.append_status_event(
            tenant_id=send_event.tenant_id,
            recipient_id=send_event.recipient_id,
            event_type=event_type,
            channel=send_event.channel,
            metadata=metadata,
        )
        if tracking_event is None:
            # callback מקביל הכניס את אותו אירוע בין הבדיקה להוספה
            raise DuplicateEventError(message_sid, event_type.value)
        return tracking_event

    async def _dead_letter(self, request: StatusCallbackRequest) -> None:
        """שמירת callback יתום לדיאגנוסטיקה. כישלון כאן לא משנה את התשובה."""
        payload = {k: v for k, v in request.params.items() if k not in _PII_FIELDS}
        try:
            await self.store.record_orphan_callback(
                message_sid=request.message_sid or "",
                message_status=request.message_status,
                error_code=request.error_code,
                payload=payload,
            )
        except SQLAlchemyError:
            await self._safe_rollback()
            logger.error(
                "Failed to store orphan callback",
                extra_data={"message_sid": request.message_sid},
                exc_info=True,
            )

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after storage failure failed", exc_info=True)

    @staticmethod
    def _log_outcome(
        outcome: IngestionOutcome,
        exc: StatusCallbackException,
        log_context: dict,
    ) -> None:
        extra = {**log_context, "outcome": outcome.value, "error_code": exc.error_code.value, **exc.details}
        if outcome is IngestionOutcome.STORAGE_FAILURE:
            # לתשומת לב המפעיל — האירוע אבד ו-Twilio לא ינסה שוב
            logger.error(exc.message, extra_data=extra)
        elif outcome in (
            IngestionOutcome.INVALID_SIGNATURE,
            IngestionOutcome.MALFORMED,
            IngestionOutcome.ORPHAN,
        ):
            logger.warning(exc.message, extra_data=extra)
        else:
            logger.info(exc.message, extra_data=extra)
