"""
Celery Tasks — תחזוקה תקופתית ועבודות רקע של מעקב המסירה.

- purge_orphan_callbacks: ניקוי dead-letter של callbacks יתומים
- invalidate_tenant_page_cache: invalidate אסינכרוני עם retry, לשירותים
  שמשנים נתוני tenant ולא רוצים להיכשל בגלל Redis זמנית לא זמין
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from redis.exceptions import RedisError

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.database import get_task_session, utcnow
from app.domain.services.event_store import TrackingEventStore
from app.domain.services.page_cache import get_tenant_page_cache

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop — מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.purge_orphan_callbacks")
def purge_orphan_callbacks(hours: int | None = None):
    """מחיקת callbacks יתומים ישנים מ-ORPHAN_CALLBACK_RETENTION_HOURS"""
    retention_hours = hours if hours is not None else settings.ORPHAN_CALLBACK_RETENTION_HOURS

    async def _purge():
        async with get_task_session() as db:
            cutoff = utcnow() - timedelta(hours=retention_hours)
            deleted = await TrackingEventStore(db).purge_orphan_callbacks(older_than=cutoff)
            logger.info(
                "Purged orphan callbacks",
                extra_data={"deleted": deleted, "retention_hours": retention_hours},
            )
            return {"deleted": deleted}

    return run_async(_purge())


@celery_app.task(
    bind=True,
    name="app.workers.tasks.invalidate_tenant_page_cache",
    max_retries=5,
    default_retry_delay=10,
)
def invalidate_tenant_page_cache(self, tenant_id: str):
    """invalidate לעמוד האורחים של tenant. כשל Redis — retry."""
    if settings.PAGE_CACHE_BACKEND != "redis":
        # cache בזיכרון שייך לתהליך ה-API, ל-worker אין גישה אליו
        logger.warning(
            "Page cache invalidation task skipped: backend is process-local",
            extra_data={"tenant_id": tenant_id, "backend": settings.PAGE_CACHE_BACKEND},
        )
        return {"invalidated": False, "reason": "process_local_backend"}

    async def _invalidate():
        await get_tenant_page_cache().invalidate(tenant_id)
        return {"invalidated": True}

    try:
        return run_async(_invalidate())
    except (RedisError, OSError) as exc:
        logger.warning(
            "Page cache invalidation failed, retrying",
            extra_data={"tenant_id": tenant_id, "error": str(exc), "retries": self.request.retries},
        )
        raise self.retry(exc=exc)
