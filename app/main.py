"""
Wedding Tracking - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Status callbacks מ-Twilio: delivered / read / failed להודעות יוצאות.",
    },
    {
        "name": "engagement",
        "description": "דשבורד מעורבות לכל חתונה: משפך, שיעורי קריאה לפי ערוץ, הזמנות שלא נקראו.",
    },
    {"name": "tracking", "description": "רישום אירועי מעקב משירות השליחה ומעמוד האורחים."},
    {"name": "page-cache", "description": "invalidate ל-cache של עמוד האורחים."},
    {"name": "admin", "description": "כלי דיאגנוסטיקה: callbacks יתומים ושרשרת אירועים של הודעה."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "מעקב מסירה ומעורבות להודעות יוצאות של חתונות (WhatsApp / SMS / Email). "
        "כל endpoint מלבד ה-webhook וה-health דורש X-Admin-API-Key."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # create_all לא מוסיף עמודות/אינדקסים לטבלאות קיימות.
    # המיגרציות רצות רק על PostgreSQL; ב-SQLite (בדיקות) create_all מספיק.
    if engine.dialect.name == "postgresql":
        from app.db.migrations import run_all_migrations, add_enum_values

        # שלב 1: ערכי enum חדשים (דורש AUTOCOMMIT)
        await add_enum_values(engine)

        # שלב 2: עמודות, אינדקסים, טבלאות
        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות — כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe — התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת התלויות: DB, Redis, Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded (503) עם פירוט."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "page_cache_backend": "memory",
                        "db": "ok",
                        "redis": "ok",
                        "celery": "ok",
                    }
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "page_cache_backend": "redis",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe — בדיקת כל התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
