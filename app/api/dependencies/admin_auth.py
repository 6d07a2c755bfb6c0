"""
אימות מפתח API ל-endpoints של אדמין (דשבורד מעורבות, page cache, מעקב).

שימוש:
    @router.get("/{tenant_id}/engagement/stats")
    async def stats(
        tenant_id: str,
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 אם המפתח חסר, 403 אם לא תואם.
    ADMIN_API_KEY לא מוגדר בסביבה — הגישה חסומה לחלוטין (403).
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint rejected: ADMIN_API_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key header: {ADMIN_API_KEY_HEADER}",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("Admin endpoint rejected: wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
