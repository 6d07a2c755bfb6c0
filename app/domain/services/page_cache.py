"""
Tenant Page Cache — snapshot של עמוד האורחים (RSVP) לכל tenant.

ה-cache לא בונה מחדש בעצמו: מי שקורא משתמש ב-read_through, ומי שמשנה
נתונים של tenant (הוספת אורח, עריכת פרטי האירוע) קורא ל-invalidate
אחרי ה-commit. ה-TTL הוא רשת ביטחון למקרה של invalidate שנשכח.

שני backends:
- memory — dict בתהליך. מתאים ל-worker יחיד / פיתוח.
- redis — משותף לכל ה-workers, מפתח tenant_page:{tenant_id}.
"""
from __future__ import annotations

import copy
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

PageSnapshot = dict[str, Any]

_REDIS_KEY_PREFIX = "tenant_page"


class TenantPageCache(ABC):
    """ממשק ה-cache. get מחזיר None כשאין ערך (או שפג תוקפו)."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, tenant_id: str) -> Optional[PageSnapshot]:
        ...

    @abstractmethod
    async def put(self, tenant_id: str, snapshot: PageSnapshot) -> None:
        ...

    @abstractmethod
    async def invalidate(self, tenant_id: str) -> None:
        ...


class InMemoryTenantPageCache(TenantPageCache):
    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[float, PageSnapshot]] = {}

    async def get(self, tenant_id: str) -> Optional[PageSnapshot]:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        expires_at, snapshot = entry
        if self._clock() >= expires_at:
            self._entries.pop(tenant_id, None)
            return None
        # עותק — קורא שמשנה את התוצאה לא ילכלך את ה-cache
        return copy.deepcopy(snapshot)

    async def put(self, tenant_id: str, snapshot: PageSnapshot) -> None:
        self._entries[tenant_id] = (
            self._clock() + self.ttl_seconds,
            copy.deepcopy(snapshot),
        )

    async def invalidate(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)


class RedisTenantPageCache(TenantPageCache):
    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"{_REDIS_KEY_PREFIX}:{tenant_id}"

    async def get(self, tenant_id: str) -> Optional[PageSnapshot]:
        try:
            redis = await get_redis()
            raw = await redis.get(self._key(tenant_id))
        except (RedisError, OSError) as e:
            # Redis לא זמין — מתנהגים כמו miss, העמוד ייבנה מה-DB
            logger.warning(
                "Page cache read failed, treating as miss",
                extra_data={"tenant_id": tenant_id, "error": str(e)},
            )
            return None

        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(
                "Corrupt page cache entry, treating as miss",
                extra_data={"tenant_id": tenant_id},
            )
            return None

    async def put(self, tenant_id: str, snapshot: PageSnapshot) -> None:
        payload = json.dumps(snapshot, default=str)
        try:
            redis = await get_redis()
            await redis.setex(self._key(tenant_id), self.ttl_seconds, payload)
        except (RedisError, OSError) as e:
            logger.warning(
                "Page cache write failed",
                extra_data={"tenant_id": tenant_id, "error": str(e)},
            )

    async def invalidate(self, tenant_id: str) -> None:
        # שגיאות ממשיכות למעלה: עמוד ישן בשקט גרוע יותר ממוטציה שנכשלה
        redis = await get_redis()
        await redis.delete(self._key(tenant_id))
        logger.info("Page cache invalidated", extra_data={"tenant_id": tenant_id})


_page_cache: TenantPageCache | None = None


def get_tenant_page_cache() -> TenantPageCache:
    """ה-instance של התהליך, לפי PAGE_CACHE_BACKEND"""
    global _page_cache
    if _page_cache is None:
        ttl_seconds = settings.PAGE_CACHE_TTL_MINUTES * 60
        if settings.PAGE_CACHE_BACKEND == "redis":
            _page_cache = RedisTenantPageCache(ttl_seconds)
        else:
            _page_cache = InMemoryTenantPageCache(ttl_seconds)
        logger.info(
            "Tenant page cache initialized",
            extra_data={"backend": settings.PAGE_CACHE_BACKEND, "ttl_seconds": ttl_seconds},
        )
    return _page_cache


def reset_tenant_page_cache() -> None:
    """לטסטים — הקריאה הבאה ל-get_tenant_page_cache תיצור instance חדש"""
    global _page_cache
    _page_cache = None


async def read_through(
    cache: TenantPageCache,
    tenant_id: str,
    builder: Callable[[str], Awaitable[PageSnapshot]],
) -> PageSnapshot:
    """
    מחזיר snapshot מה-cache, או בונה ושומר כשאין.

    invalidate שמגיע בזמן הבנייה עלול להישאר מוסתר עד ה-TTL;
    ה-mutation הבא של אותו tenant יתקן.
    """
    cached = await cache.get(tenant_id)
    if cached is not None:
        return cached

    snapshot = await builder(tenant_id)
    await cache.put(tenant_id, snapshot)
    return snapshot
