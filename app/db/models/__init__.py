"""
Database Models
"""
from app.db.models.tracking_event import TrackingEvent, EventType, Channel
from app.db.models.recipient import Recipient
from app.db.models.orphan_callback import OrphanCallback

__all__ = [
    "TrackingEvent",
    "EventType",
    "Channel",
    "Recipient",
    "OrphanCallback",
]
