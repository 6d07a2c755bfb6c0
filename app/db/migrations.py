"""
מיגרציות DB מרכזיות - מקור אמת יחיד לכל שינויי סכמה.

רץ ב-startup (main.py) על PostgreSQL בלבד; ב-SQLite (בדיקות) create_all מספיק.
כל המיגרציות idempotent (בטוח להריץ מספר פעמים, גם ממספר instances).
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.core.logging import get_logger

logger = get_logger(__name__)

# ערכי enum שנוספו אחרי יצירת הטבלה הראשונית.
# SQLEnum(EventType) ללא values_callable שולח את שם ה-member — אותיות גדולות.
_ADDED_EVENT_TYPES = ("SAVE_THE_DATE_SENT", "PAYMENT_RECEIVED")


async def run_migration_001(conn: AsyncConnection) -> None:
    """מיגרציה 001 - עמודת correlation_id + מילוי לאחור מ-metadata."""
    await conn.execute(text("""
        ALTER TABLE tracking_events
            ADD COLUMN IF NOT EXISTS correlation_id VARCHAR(64);
    """))

    # אירועים ישנים נשאו את ה-SID רק בתוך ה-JSON
    await conn.execute(text("""
        UPDATE tracking_events
        SET correlation_id = metadata->>'message_sid'
        WHERE correlation_id IS NULL
          AND metadata IS NOT NULL
          AND metadata->>'message_sid' IS NOT NULL;
    """))

    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_tracking_events_correlation_id
        ON tracking_events(correlation_id);
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """מיגרציה 002 - ייחודיות אירוע סטטוס לכל (tenant, message_sid, סוג).

    לפני יצירת ה-index מוחקים כפילויות שנוצרו כשה-idempotency נבדקה
    רק באפליקציה — נשאר האירוע המוקדם ביותר.
    """
    await conn.execute(text("""
        DELETE FROM tracking_events t
        USING tracking_events keep
        WHERE t.event_type IN ('MESSAGE_DELIVERED', 'MESSAGE_FAILED', 'MESSAGE_READ')
          AND keep.event_type = t.event_type
          AND keep.tenant_id = t.tenant_id
          AND keep.correlation_id = t.correlation_id
          AND (keep.timestamp, keep.id) < (t.timestamp, t.id);
    """))

    await conn.execute(text("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_tracking_events_status_per_message
        ON tracking_events(tenant_id, correlation_id, event_type)
        WHERE event_type IN ('MESSAGE_DELIVERED', 'MESSAGE_FAILED', 'MESSAGE_READ');
    """))


async def run_migration_003(conn: AsyncConnection) -> None:
    """מיגרציה 003 - אינדקסים לדשבורד המעורבות."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_tracking_events_tenant_recipient
        ON tracking_events(tenant_id, recipient_id, timestamp);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_tracking_events_tenant_type
        ON tracking_events(tenant_id, event_type);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_recipients_tenant
        ON recipients(tenant_id);
    """))


async def run_migration_004(conn: AsyncConnection) -> None:
    """מיגרציה 004 - טבלת dead-letter ל-callbacks יתומים."""
    await conn.execute(text("""
        CREATE TABLE IF NOT EXISTS orphan_callbacks (
            id SERIAL PRIMARY KEY,
            message_sid VARCHAR(64) NOT NULL,
            message_status VARCHAR(32),
            error_code VARCHAR(16),
            payload JSON,
            received_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
        );
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_orphan_callbacks_message_sid
        ON orphan_callbacks(message_sid);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_orphan_callbacks_received_at
        ON orphan_callbacks(received_at);
    """))


async def add_enum_values(engine: AsyncEngine) -> None:
    """
    הוספת ערכים חדשים ל-enum types קיימים.

    ALTER TYPE ... ADD VALUE לא יכול לרוץ בתוך טרנזקציה (PG < 12)
    ולא בתוך בלוק PL/pgSQL (כל הגרסאות).
    לכן מריצים בחיבור נפרד עם AUTOCOMMIT.
    """
    async with engine.connect() as conn:
        await conn.execution_options(isolation_level="AUTOCOMMIT")
        for value in _ADDED_EVENT_TYPES:
            await conn.execute(text(
                f"ALTER TYPE eventtype ADD VALUE IF NOT EXISTS '{value}'"
            ))
            logger.info(f"Ensured '{value}' exists in eventtype enum")


async def run_all_migrations(conn: AsyncConnection) -> None:
    """הרצת כל המיגרציות ברצף (ללא ALTER TYPE — ראה add_enum_values)."""
    logger.info("Running migration 001...")
    await run_migration_001(conn)
    logger.info("Running migration 002...")
    await run_migration_002(conn)
    logger.info("Running migration 003...")
    await run_migration_003(conn)
    logger.info("Running migration 004...")
    await run_migration_004(conn)
