"""
Twilio status callback primitives

אימות חתימה ומיפוי סטטוסים — פונקציות טהורות, ללא I/O.
"""
from app.domain.services.twilio.signature import (
    SIGNATURE_HEADER,
    compute_signature,
    verify_raw_request,
    verify_signature,
)
from app.domain.services.twilio.status_mapper import map_provider_status

__all__ = [
    "SIGNATURE_HEADER",
    "compute_signature",
    "verify_raw_request",
    "verify_signature",
    "map_provider_status",
]
