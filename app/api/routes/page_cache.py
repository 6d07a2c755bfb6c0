"""
Page Cache API — invalidate לעמוד האורחים אחרי שינוי נתוני tenant.

כשל ב-Redis מוחזר כ-503 כדי שה-mutation שקרא לכאן ידע שהעמוד
עלול להיות ישן ויוכל לנסות שוב.
"""
from fastapi import APIRouter, Depends
from redis.exceptions import RedisError

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_logger
from app.domain.services.page_cache import TenantPageCache, get_tenant_page_cache

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


@router.post("/{tenant_id}/page-cache/invalidate")
async def invalidate_page_cache(
    tenant_id: str,
    cache: TenantPageCache = Depends(get_tenant_page_cache),
) -> dict:
    try:
        await cache.invalidate(tenant_id)
    except (RedisError, OSError) as e:
        logger.error(
            "Page cache invalidation failed",
            extra_data={"tenant_id": tenant_id, "error": str(e)},
        )
        raise AppException(
            message="Page cache unavailable",
            error_code=ErrorCode.CACHE_UNAVAILABLE,
            status_code=503,
            details={"tenant_id": tenant_id},
        ) from e
    return {"success": True, "tenant_id": tenant_id}
