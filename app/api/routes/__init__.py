"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_debug import router as admin_debug_router
from app.api.routes.engagement import router as engagement_router
from app.api.routes.page_cache import router as page_cache_router
from app.api.routes.tracking import router as tracking_router
from app.api.webhooks.twilio import router as twilio_router

router = APIRouter()

router.include_router(engagement_router, prefix="/tenants", tags=["engagement"])
router.include_router(page_cache_router, prefix="/tenants", tags=["page-cache"])
router.include_router(tracking_router, prefix="/tracking", tags=["tracking"])
router.include_router(admin_debug_router, prefix="/admin", tags=["admin"])
# Canonical webhook endpoint (documented)
router.include_router(twilio_router, prefix="/twilio", tags=["webhooks"])

# Backwards-compatible webhook endpoint
router.include_router(
    twilio_router,
    prefix="/webhooks/twilio",
    tags=["webhooks"],
    include_in_schema=False
)
