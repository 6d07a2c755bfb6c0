"""
לוגים מובנים: JSON בפרודקשן, טקסט קריא בפיתוח, ו-correlation id בכל רשומה.

callback של Twilio, בקשת דשבורד וטאסק Celery מקבלים כל אחד correlation id
משלו, כך שאפשר לשחזר את כל השורות של callback בודד.
"""
import logging
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any
from contextvars import ContextVar
from functools import wraps

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# שם השירות שמוטבע בכל רשומת JSON (נקבע ב-setup_logging)
_service_name = "wedding-tracking"

# ספריות רועשות — רק אזהרות ומעלה
_THIRD_PARTY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):
    """רשומה אחת = שורת JSON אחת"""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_entry = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": _service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        # עברית נשארת קריאה בלוג
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """
    Logger שמקבל extra_data={...} בכל קריאה (info, warning וכו').
    השדות נשמרים על הרשומה ומודפסים תחת "extra" ב-JSON.
    """

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            # המסגרת של _log עצמה לא נחשבת כמקום הקריאה
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "wedding-tracking"
) -> None:
    """
    הגדרת ה-root logger לתהליך (web או worker).

    Args:
        level: DEBUG / INFO / WARNING / ERROR / CRITICAL
        json_format: JSON לפרודקשן, טקסט לפיתוח
        app_name: שם השירות בכל רשומת JSON
    """
    global _service_name
    _service_name = app_name

    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)

    for name, lib_level in _THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)


class CorrelationIdFilter(logging.Filter):
    """מוסיף correlation_id לרשומה עבור פורמט הטקסט ("-" כשאין)"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """ה-correlation id הנוכחי; אם אין — נוצר ונשמר ב-context"""
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """
    דקורטור לפעולות async: debug בהתחלה, info עם משך בסיום, error בכישלון.

    משמש את שאילתות הדשבורד, שרצות בכל רינדור.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            start = time.perf_counter()
            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"}
            )

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.perf_counter() - start, 4),
                        "error": str(e),
                    },
                    exc_info=True
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.perf_counter() - start, 4),
                }
            )
            return result

        return wrapper
    return decorator
