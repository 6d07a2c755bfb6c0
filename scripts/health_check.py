#!/usr/bin/env python3
"""
סקריפט בדיקות בריאות למערכת - להרצה ב-shell של השרת

הרצה (מתוך תיקיית הפרויקט):
    python scripts/health_check.py

או עם בדיקות ספציפיות:
    python scripts/health_check.py --only signature,status_mapper

בדיקות זמינות:
    config, signature, status_mapper, page_cache, logging, exceptions, database
"""
import sys
import os
import asyncio
import argparse
from datetime import datetime
from pathlib import Path

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class Colors:
    """צבעים לפלט בטרמינל"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def print_header(title: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}")
    print(f" {title}")
    print(f"{'='*60}{Colors.RESET}\n")


def print_result(test_name: str, passed: bool, details: str = "") -> None:
    status = f"{Colors.GREEN}✓ PASS{Colors.RESET}" if passed else f"{Colors.RED}✗ FAIL{Colors.RESET}"
    print(f"  {status} {test_name}")
    if details:
        print(f"         {Colors.YELLOW}{details}{Colors.RESET}")


def print_section(title: str) -> None:
    print(f"\n{Colors.BOLD}▶ {title}{Colors.RESET}")


class HealthChecker:
    """בודק בריאות המערכת"""

    def __init__(self):
        self.results: list[tuple[str, bool, str]] = []
        self.total_passed = 0
        self.total_failed = 0

    def record(self, test_name: str, passed: bool, details: str = "") -> None:
        self.results.append((test_name, passed, details))
        if passed:
            self.total_passed += 1
        else:
            self.total_failed += 1
        print_result(test_name, passed, details)

    # =========================================================================
    # בדיקות חתימת Twilio
    # =========================================================================
    def test_signature(self) -> None:
        print_section("Twilio Signature")

        try:
            from app.domain.services.twilio.signature import (
                compute_signature,
                verify_signature,
            )

            # דוגמת התיעוד של Twilio
            url = "https://mycompany.com/myapp.php?foo=1&bar=2"
            params = {
                "CallSid": "CA1234567890ABCDE",
                "Caller": "+12349013030",
                "Digits": "1234",
                "From": "+12349013030",
                "To": "+18005551212",
            }
            token = "12345"
            signature = compute_signature(token, url, params)
            self.record(
                "Known vector",
                signature == "0/KCTR6DLpKmkAf8muzZqo1nDgQ=",
                f"Result: {signature}"
            )
            self.record(
                "Valid signature accepted",
                verify_signature(url, params, signature, token)
            )

            tampered = dict(params, Digits="9999")
            self.record(
                "Tampered params rejected",
                not verify_signature(url, tampered, signature, token)
            )

            self.record(
                "Missing auth token fails closed",
                not verify_signature(url, params, signature, "")
            )

        except Exception as e:
            self.record("Signature tests", False, str(e))

    # =========================================================================
    # בדיקות מיפוי סטטוס
    # =========================================================================
    def test_status_mapper(self) -> None:
        print_section("Status Mapping")

        try:
            from app.db.models.tracking_event import EventType
            from app.domain.services.twilio.status_mapper import map_provider_status

            cases = {
                "delivered": EventType.MESSAGE_DELIVERED,
                "read": EventType.MESSAGE_READ,
                "failed": EventType.MESSAGE_FAILED,
                "undelivered": EventType.MESSAGE_FAILED,
                "sent": None,
                "queued": None,
            }
            for provider_status, expected in cases.items():
                result = map_provider_status(provider_status)
                self.record(
                    f"{provider_status} -> {expected.value if expected else None}",
                    result == expected,
                    f"Result: {result}"
                )

        except Exception as e:
            self.record("Status mapping tests", False, str(e))

    # =========================================================================
    # בדיקות Page Cache
    # =========================================================================
    def test_page_cache(self) -> None:
        print_section("Tenant Page Cache")

        try:
            from app.domain.services.page_cache import InMemoryTenantPageCache, read_through

            cache = InMemoryTenantPageCache(ttl_seconds=60)
            builds: list[str] = []

            async def _builder(tenant_id: str) -> dict:
                builds.append(tenant_id)
                return {"tenant_id": tenant_id, "version": len(builds)}

            async def _scenario() -> tuple[dict, dict, dict]:
                first = await read_through(cache, "w1", _builder)
                second = await read_through(cache, "w1", _builder)
                await cache.invalidate("w1")
                third = await read_through(cache, "w1", _builder)
                return first, second, third

            loop = asyncio.new_event_loop()
            try:
                first, second, third = loop.run_until_complete(_scenario())
            finally:
                loop.close()

            self.record("Second read served from cache", second == first and len(builds) == 2)
            self.record("Invalidate forces rebuild", third["version"] == 2)

        except Exception as e:
            self.record("Page cache tests", False, str(e))

    # =========================================================================
    # בדיקות Logging
    # =========================================================================
    def test_logging(self) -> None:
        print_section("Logging Infrastructure")

        try:
            from app.core.logging import (
                get_logger,
                set_correlation_id,
                get_correlation_id
            )

            # בדיקת יצירת logger
            logger = get_logger("health_check")
            self.record("Logger creation", logger is not None)

            # בדיקת correlation ID
            cid = set_correlation_id()
            retrieved = get_correlation_id()
            self.record(
                "Correlation ID generation",
                cid == retrieved and len(cid) > 0,
                f"ID: {cid[:8]}..."
            )

            # בדיקת custom correlation ID
            custom_id = "test-12345"
            set_correlation_id(custom_id)
            self.record(
                "Custom correlation ID",
                get_correlation_id() == custom_id
            )

        except Exception as e:
            self.record("Logging tests", False, str(e))

    # =========================================================================
    # בדיקות Exceptions
    # =========================================================================
    def test_exceptions(self) -> None:
        print_section("Custom Exceptions")

        try:
            from app.core.exceptions import (
                ErrorCode,
                MalformedCallbackError,
                OrphanCallbackError,
                WebhookAuthenticationError,
            )

            exc = WebhookAuthenticationError("signature mismatch")
            self.record(
                "WebhookAuthenticationError is 403",
                exc.status_code == 403 and exc.error_code == ErrorCode.WEBHOOK_AUTHENTICATION_FAILED,
                f"Error code: {exc.error_code.value}"
            )

            exc = MalformedCallbackError("MessageSid")
            self.record("MalformedCallbackError is 400", exc.status_code == 400)

            # יתום מאושר ל-Twilio (200) — אחרת retry storm
            exc = OrphanCallbackError("SM404")
            self.record(
                "OrphanCallbackError acknowledged",
                exc.status_code == 200 and exc.details.get("message_sid") == "SM404"
            )

        except Exception as e:
            self.record("Exception tests", False, str(e))

    # =========================================================================
    # בדיקות Database
    # =========================================================================
    def test_database(self) -> None:
        print_section("Database Connectivity")

        try:
            from app.db.database import engine
            from sqlalchemy import text

            async def check_db():
                async with engine.connect() as conn:
                    result = await conn.execute(text("SELECT 1"))
                    return result.scalar() == 1

            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                connected = loop.run_until_complete(check_db())
                self.record("Database connection", connected)
            finally:
                loop.close()

        except Exception as e:
            self.record("Database connection", False, str(e))

    # =========================================================================
    # בדיקות Configuration
    # =========================================================================
    def test_config(self) -> None:
        print_section("Configuration")

        try:
            from app.core.config import settings

            self.record(
                "Settings loaded",
                settings is not None,
                f"App: {settings.APP_NAME}"
            )

            # בדיקת משתנים חיוניים
            has_db = bool(settings.DATABASE_URL)
            self.record(
                "DATABASE_URL configured",
                has_db,
                "***" if has_db else "MISSING!"
            )

            # בלי טוקן כל status callback נדחה ב-403
            has_token = bool(settings.TWILIO_AUTH_TOKEN)
            self.record(
                "TWILIO_AUTH_TOKEN configured",
                has_token,
                "***" if has_token else "MISSING! All status callbacks will be rejected"
            )

            self.record(
                "PAGE_CACHE_BACKEND",
                settings.PAGE_CACHE_BACKEND in ("memory", "redis"),
                f"Backend: {settings.PAGE_CACHE_BACKEND}"
            )

        except Exception as e:
            self.record("Configuration tests", False, str(e))

    # =========================================================================
    # הרצת כל הבדיקות
    # =========================================================================
    def run_all(self, only: list[str] | None = None) -> bool:
        print_header(f"בדיקות בריאות המערכת - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        tests = {
            "config": self.test_config,
            "signature": self.test_signature,
            "status_mapper": self.test_status_mapper,
            "page_cache": self.test_page_cache,
            "logging": self.test_logging,
            "exceptions": self.test_exceptions,
            "database": self.test_database,
        }

        if only:
            tests = {k: v for k, v in tests.items() if k in only}

        for test_func in tests.values():
            try:
                test_func()
            except Exception as e:
                print(f"{Colors.RED}Error running test: {e}{Colors.RESET}")

        # סיכום
        print_header("סיכום")
        total = self.total_passed + self.total_failed

        if self.total_failed == 0:
            print(f"{Colors.GREEN}{Colors.BOLD}✓ כל הבדיקות עברו בהצלחה! ({total}/{total}){Colors.RESET}")
        else:
            print(f"{Colors.RED}{Colors.BOLD}✗ נכשלו {self.total_failed} בדיקות מתוך {total}{Colors.RESET}")
            print(f"\n{Colors.YELLOW}בדיקות שנכשלו:{Colors.RESET}")
            for name, passed, details in self.results:
                if not passed:
                    print(f"  - {name}: {details}")

        print()
        return self.total_failed == 0


def main():
    parser = argparse.ArgumentParser(description="בדיקות בריאות המערכת")
    parser.add_argument(
        "--only",
        type=str,
        help="הרץ רק בדיקות ספציפיות (מופרדות בפסיק): config,signature,status_mapper,page_cache,logging,exceptions,database"
    )
    args = parser.parse_args()

    only = args.only.split(",") if args.only else None

    checker = HealthChecker()
    success = checker.run_all(only)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
