"""
Domain Services
"""
from app.domain.services.event_store import TrackingEventStore
from app.domain.services.tracking_service import TrackingService
from app.domain.services.status_callback_service import StatusCallbackService
from app.domain.services.engagement_service import EngagementService

__all__ = [
    "TrackingEventStore",
    "TrackingService",
    "StatusCallbackService",
    "EngagementService",
]
