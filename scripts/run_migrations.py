#!/usr/bin/env python3
"""
Database Migration Runner

Runs the idempotent schema migrations from app/db/migrations.py against
DATABASE_URL without starting the web app (for release steps / one-off shells).
"""
import asyncio
import sys
from pathlib import Path

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from app.db.database import Base, engine  # noqa: E402
from app.db import models  # noqa: E402,F401  רישום המודלים ב-Base.metadata
from app.db.migrations import add_enum_values, run_all_migrations  # noqa: E402


async def _run() -> None:
    if engine.dialect.name != "postgresql":
        print(f"Skipping: migrations target PostgreSQL, got {engine.dialect.name}")
        return

    print("Creating missing tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    print("Adding enum values...")
    await add_enum_values(engine)

    print("Running migrations...")
    async with engine.begin() as conn:
        await run_all_migrations(conn)

    await engine.dispose()


def main():
    print("=" * 50)
    print("Database Migration Runner")
    print("=" * 50)

    try:
        asyncio.run(_run())
    except Exception as e:
        print(f"ERROR: Migration failed: {e}")
        return 1

    print("✓ Migrations completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
